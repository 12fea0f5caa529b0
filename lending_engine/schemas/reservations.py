from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class CreateReservationDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    userID: Optional[int] = None
    reservedFor: Optional[datetime] = None
    quantity: int = 1
    notes: Optional[str] = None
