# app/models/api/secret_response.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.domain.secret_domain import SecretStatus


class CheckInResponse(BaseModel):
    """Response for POST /api/check-in and POST /api/secrets/{id}/check-in"""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    secret_title: str = Field(..., alias="secretTitle")
    next_check_in: datetime = Field(..., alias="nextCheckIn")
    message: str


class TogglePauseResponse(BaseModel):
    """Response for POST /api/secrets/{id}/toggle-pause"""

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    status: SecretStatus
    next_check_in: datetime | None = Field(None, alias="nextCheckIn")


class ServerShareResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    server_share: str = Field(..., alias="serverShare")

