from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    borrowerID: Optional[int] = None
    quantity: int = 1
    dueDate: datetime
    notes: Optional[str] = None


class ExtendLendingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    newDueDate: datetime


class PenaltyOverrideRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    penalty: float = Field(ge=0)
    reason: Optional[str] = None


class BlacklistCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    userID: int
    reason: str
    daysBlocked: int = Field(ge=1)
