from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict


class OpenLoanRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: List[str] = []
    cardIds: List[str] = []
    contact: Optional[str] = None
    contact2: Optional[str] = None
    loanType: Literal["TENANT", "MAINTENANCE"] = "TENANT"
    leaseEndDate: Optional[date] = None
    createdBy: Optional[str] = None


class TransferPreviewRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    contacts: List[str] = []


class ReturnItemsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: List[str] = []
    cardIds: List[str] = []
    selectedForReceipt: Optional[List[str]] = None
    selectedCardsForReceipt: Optional[List[str]] = None
    availableToNextTenantFrom: Optional[datetime] = None
    comment: Optional[str] = None
    replacement: bool = False


class DisposeKeysRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: List[str] = []


class UndoDisposalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    undoToken: str


class FlexRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: List[str] = []
    counts: Dict[str, int] = {}
    baselines: Dict[str, int] = {}


class OrderKeysRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: List[str] = []


class ReceiveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    rentalObjectCode: str
    keyIds: Optional[List[str]] = None
    disposeKeyIds: Optional[List[str]] = None
