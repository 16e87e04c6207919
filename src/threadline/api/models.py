"""Request/response models for the operator API.

Successful responses follow ``{"data": T, "meta": {...}}`` and errors
``{"error": {"code": "...", "message": "..."}}``. Field names are camelCase on
the wire, matching the stored documents.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from threadline.models import IdentityType, NormalizedMessage

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Envelopes
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CursorMeta(_ApiModel):
    """Keyset pagination metadata. Pass ``next_cursor`` back as ``cursor``."""

    next_cursor: str | None = None
    has_more: bool = False


class CursorPage(BaseModel, Generic[T]):
    data: list[T]
    meta: CursorMeta


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class IngestRequest(_ApiModel):
    """Inbound message plus the organization it belongs to.

    ``organization_id`` falls back to the configured default organization.
    """

    organization_id: str | None = None
    message: NormalizedMessage


class AssignRequest(_ApiModel):
    thread_id: str = Field(min_length=1)
    assigned_by: str | None = None


class ReplayRequest(_ApiModel):
    operator_identity: str = Field(min_length=1)


class ExternalIdentityRequest(_ApiModel):
    type: IdentityType
    value: str = Field(min_length=1)
    verified: bool = False
    verified_at: datetime | None = None
    verified_expires_at: datetime | None = None


class VerificationRequest(_ApiModel):
    type: IdentityType
    value: str = Field(min_length=1)
    expires_in_days: int | None = Field(default=None, gt=0)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class IdentityLookupResult(_ApiModel):
    identifier: str
    user_id: str | None = None


class VerificationResult(_ApiModel):
    type: IdentityType
    value: str
    updated: bool


class ReplayResult(_ApiModel):
    dead_letter_id: str
    pending_id: str
    next_eligible_at: datetime


class SweepResult(_ApiModel):
    started_at: datetime
    evaluated: int
    succeeded: int
    failed: int
    dead_lettered: int
    deferred: int
    errors: int
    skipped_overlap: bool
    dead_letter_ids: list[str]


__all__ = [
    "ApiMeta",
    "ApiResponse",
    "AssignRequest",
    "CursorMeta",
    "CursorPage",
    "ErrorDetail",
    "ErrorResponse",
    "ExternalIdentityRequest",
    "IdentityLookupResult",
    "IngestRequest",
    "ReplayRequest",
    "ReplayResult",
    "SweepResult",
    "VerificationRequest",
    "VerificationResult",
]
