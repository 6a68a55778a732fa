from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from intake.helpers import (
    MAX_EMAIL_LENGTH,
    MAX_URL_LENGTH,
    is_disposable_email,
    matches_youtube_pattern,
)

Severity = Literal["info", "low", "medium", "high"]


class SubmissionPayload(BaseModel):
    """Raw JSON body of a submission; field types are checked by the gatekeeper."""

    model_config = ConfigDict(populate_by_name=True)

    url: Any = None
    email: Any = None
    honeypot: Any = Field(None, alias="_honeypot")
    csrf_token: Any = Field(None, alias="csrfToken")


class SubmissionRequest(BaseModel):
    url: Any = None
    email: Any = None
    honeypot: Any = None
    csrf_token: Any = None
    header_token: Optional[str] = None
    client_ip: str
    user_agent: str = ""


class SubmissionForm(BaseModel):
    """Schema applied to the raw form fields."""

    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(..., max_length=MAX_URL_LENGTH)
    email: EmailStr
    honeypot: Any = Field(None, alias="_honeypot")
    csrf_token: Any = Field(None, alias="csrfToken")

    @field_validator("url")
    @classmethod
    def _youtube_link(cls, v: str) -> str:
        if not matches_youtube_pattern(v):
            raise ValueError("Please provide a valid YouTube link")
        return v

    @field_validator("email")
    @classmethod
    def _regular_provider(cls, v: str) -> str:
        if len(v) > MAX_EMAIL_LENGTH:
            raise ValueError("Email address is too long")
        if is_disposable_email(v):
            raise ValueError("Please use a regular email provider")
        return v

    @field_validator("honeypot")
    @classmethod
    def _left_empty(cls, v: Any) -> Any:
        if v is not None and v != "":
            raise ValueError("Bot detected")
        return v


class RateLimit(BaseModel):
    identity: str
    request_count: int
    window_start: datetime


class SecurityEvent(BaseModel):
    timestamp: datetime
    type: str
    ip: str
    user_agent: str = Field("", serialization_alias="userAgent")
    details: Any = None
    severity: Severity = "info"


class Pricing(BaseModel):
    suggested_price_usd: Optional[float] = None


class PreviewResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    preview_id: str = Field(..., alias="previewId")
    pricing: Pricing = Field(default_factory=Pricing)


class SubmissionResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    message: str
    preview_id: Optional[str] = Field(None, serialization_alias="previewId")
    estimated_cost: Optional[float] = Field(None, serialization_alias="estimatedCost")


class CsrfToken(BaseModel):
    token: str
    expires: int
