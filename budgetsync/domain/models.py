"""Wire models for the user-data endpoint."""
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

ACTION_GET = "get"
ACTION_SAVE = "save"


class SyncRequest(BaseModel):
    """Request body. Unknown fields are ignored."""
    mobile: Optional[str] = None
    action: Optional[str] = None
    dataType: Optional[str] = Field(default=None, max_length=255)
    data: Any = None
    name: Optional[str] = None

    model_config = {"extra": "ignore"}

    @field_validator("mobile", mode="before")
    @classmethod
    def coerce_mobile(cls, v):
        # Some clients send the number as a JSON number
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v


class SaveDetails(BaseModel):
    user: str
    dataType: str
    timestamp: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
    )


class SaveAck(BaseModel):
    success: bool = True
    message: str = "Data saved successfully"
    details: SaveDetails
