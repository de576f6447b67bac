from typing import List, Literal

from pydantic import BaseModel, ConfigDict


class KeyEventOrderDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyIds: List[str]


class UpdateKeyEventDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Literal["ORDERED", "RECEIVED", "COMPLETED"]


class LatestEventsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyIds: List[str] = []
