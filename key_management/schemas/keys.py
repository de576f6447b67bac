from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict

KeyType = Literal["HN", "FS", "MV", "LGH", "PB", "GAR", "LOK", "HL", "FÖR", "SOP", "ÖVR"]


class CreateKeyDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyName: str
    keyType: KeyType
    rentalObjectCode: Optional[str] = None
    keySequenceNumber: Optional[int] = None
    flexNumber: Optional[int] = None
    keySystemId: Optional[str] = None
    disposed: bool = False


class UpdateKeyDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyName: Optional[str] = None
    keyType: Optional[KeyType] = None
    rentalObjectCode: Optional[str] = None
    keySequenceNumber: Optional[int] = None
    flexNumber: Optional[int] = None
    keySystemId: Optional[str] = None
    disposed: Optional[bool] = None


class BulkUpdateKeysDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    keyIds: List[str]
    updates: UpdateKeyDto


class CardCodeDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    format: Optional[str] = None
    number: Optional[str] = None


class CreateCardDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: Optional[str] = None
    rentalObjectCode: Optional[str] = None
    disabled: bool = False
    owner: Optional[str] = None
    codes: List[CardCodeDto] = []


class CreateKeySystemDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    systemCode: str
    name: Optional[str] = None
    manufacturer: Optional[str] = None
    type: Literal["MECHANICAL", "ELECTRONIC", "HYBRID"] = "MECHANICAL"
    isActive: bool = True
