"""Identity link endpoints.

- ``GET /api/identity/{organization_id}/lookup``: resolve an external identifier
- ``GET /api/identity/{organization_id}/users/{user_id}``: a user's identity link
- ``POST /api/identity/{organization_id}/users/{user_id}/identities``: link an identity
- ``DELETE /api/identity/{organization_id}/users/{user_id}/identities/{type}/{value}``
- ``POST /api/identity/{organization_id}/verify`` / ``.../unverify``
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from threadline.api.deps import get_engine
from threadline.api.models import (
    ApiResponse,
    ExternalIdentityRequest,
    IdentityLookupResult,
    VerificationRequest,
    VerificationResult,
)
from threadline.engine import RoutingEngine
from threadline.identity.validation import validate_identifier
from threadline.models import ExternalIdentity, IdentityLink, IdentityType

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/identity/{organization_id}", tags=["identity"])


class IdentityLinkNotFoundError(LookupError):
    """No identity link exists for the user in the organization."""


@router.get("/lookup", response_model=ApiResponse[IdentityLookupResult])
async def lookup_identifier(
    organization_id: str,
    identifier: str = Query(..., min_length=1),
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[IdentityLookupResult]:
    user_id = await engine.resolver.lookup(identifier, organization_id)
    return ApiResponse[IdentityLookupResult](
        data=IdentityLookupResult(identifier=identifier, user_id=user_id)
    )


@router.get("/users/{user_id}", response_model=ApiResponse[IdentityLink])
async def get_identity_link(
    organization_id: str,
    user_id: str,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[IdentityLink]:
    link = await engine.resolver.get_identity_link(user_id, organization_id)
    if link is None:
        raise IdentityLinkNotFoundError(f"{organization_id}/{user_id}")
    return ApiResponse[IdentityLink](data=link)


@router.post(
    "/users/{user_id}/identities", response_model=ApiResponse[IdentityLink], status_code=201
)
async def add_identity(
    organization_id: str,
    user_id: str,
    request: ExternalIdentityRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[IdentityLink]:
    identity = ExternalIdentity(
        type=request.type,
        value=request.value,
        verified=request.verified,
        verified_at=request.verified_at,
        verified_expires_at=request.verified_expires_at,
    )
    link = await engine.resolver.add_external_identity(user_id, identity, organization_id)
    return ApiResponse[IdentityLink](data=link)


@router.delete("/users/{user_id}/identities/{identity_type}/{value}", status_code=204)
async def remove_identity(
    organization_id: str,
    user_id: str,
    identity_type: IdentityType,
    value: str,
    engine: RoutingEngine = Depends(get_engine),
) -> None:
    removed = await engine.resolver.remove_external_identity(
        user_id, identity_type, value, organization_id
    )
    if not removed:
        raise IdentityLinkNotFoundError(f"{organization_id}/{user_id}/{identity_type}")


@router.post("/verify", response_model=ApiResponse[VerificationResult])
async def verify_identity(
    organization_id: str,
    request: VerificationRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[VerificationResult]:
    validate_identifier(request.type, request.value)
    updated = await engine.resolver.verify(
        request.type, request.value, organization_id, expires_in_days=request.expires_in_days
    )
    return ApiResponse[VerificationResult](
        data=VerificationResult(type=request.type, value=request.value, updated=updated)
    )


@router.post("/unverify", response_model=ApiResponse[VerificationResult])
async def unverify_identity(
    organization_id: str,
    request: VerificationRequest,
    engine: RoutingEngine = Depends(get_engine),
) -> ApiResponse[VerificationResult]:
    validate_identifier(request.type, request.value)
    updated = await engine.resolver.unverify(request.type, request.value, organization_id)
    return ApiResponse[VerificationResult](
        data=VerificationResult(type=request.type, value=request.value, updated=updated)
    )
