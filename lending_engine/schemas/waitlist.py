from typing import Optional

from pydantic import BaseModel, ConfigDict


class JoinWaitlistDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    userID: Optional[int] = None
    priority: int = 0
    notifyWhenAvailable: bool = True
    notes: Optional[str] = None
