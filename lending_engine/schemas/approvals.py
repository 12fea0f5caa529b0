from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict


class CreateApprovalDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    itemID: int
    requestType: Literal["lending", "extension", "reservation"]
    requestData: Dict[str, Any] = {}


class ApprovalDecisionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    decision: Literal["approve", "reject"]
    notes: Optional[str] = None
