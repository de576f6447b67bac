from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateKeyLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keys: List[str] = []
    cards: List[str] = []
    contact: Optional[str] = None
    contact2: Optional[str] = None
    loanType: Literal["TENANT", "MAINTENANCE"] = "TENANT"
    createdBy: Optional[str] = None


class ReturnKeyLoanDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyIds: List[str] = []
    cardIds: List[str] = []
    availableToNextTenantFrom: Optional[datetime] = None
    selectedForReceipt: Optional[List[str]] = None
    selectedCardsForReceipt: Optional[List[str]] = None
    comment: Optional[str] = None
