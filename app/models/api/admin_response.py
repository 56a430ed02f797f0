# app/models/api/admin_response.py
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from app.models.domain.secret_domain import (
    EmailFailureRecord,
    EmailType,
    FailureClassification,
)


class EmailFailureItem(BaseModel):
    """Dead letter entry as exposed to operators."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    email_type: EmailType = Field(..., alias="emailType")
    provider: str
    recipient: str
    subject: str
    error_message: str = Field(..., alias="errorMessage")
    classification: FailureClassification
    retry_count: int = Field(..., alias="retryCount")
    secret_id: str | None = Field(None, alias="secretId")
    created_at: datetime | None = Field(None, alias="createdAt")
    resolved_at: datetime | None = Field(None, alias="resolvedAt")

    @classmethod
    def from_record(cls, record: EmailFailureRecord) -> "EmailFailureItem":
        return cls.model_validate(record.model_dump())


class EmailFailureListResponse(BaseModel):
    failures: list[EmailFailureItem]
    total: int


class EmailFailureStatsResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total: int
    unresolved: int
    permanent: int
    exhausted: int
    by_type: dict[str, int] = Field(default_factory=dict, alias="byType")
    by_provider: dict[str, int] = Field(default_factory=dict, alias="byProvider")


class RetryResponse(BaseModel):
    success: bool
    error: str | None = None
    classification: FailureClassification | None = None
