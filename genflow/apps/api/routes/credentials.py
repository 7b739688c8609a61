from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from genflow.apps.api.deps import get_current_user_id, get_services
from genflow.apps.api.openapi import CREDENTIAL_VALIDATION_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from genflow.apps.api.response import SuccessEnvelope, success_response
from genflow.core.container import Services
from genflow.core.errors import ValidationError
from genflow.services.credentials import CredentialInfo


router = APIRouter(prefix="/credentials", tags=["credentials"], responses=DEFAULT_ERROR_RESPONSES)


class PutCredentialRequest(BaseModel):
    api_key: str = Field(min_length=1, max_length=4096)


class CredentialResponse(BaseModel):
    provider: str
    scheme: str
    validation_status: str
    needs_review: bool
    updated_at: datetime | None


def _credential_payload(info: CredentialInfo) -> CredentialResponse:
    # Metadata only; payloads and plaintext never leave the store.
    return CredentialResponse(
        provider=info.provider,
        scheme=info.scheme,
        validation_status=info.validation_status,
        needs_review=info.needs_review,
        updated_at=info.updated_at,
    )


@router.put("/{provider}", response_model=SuccessEnvelope[CredentialResponse])
async def put_credential(
    provider: str,
    payload: PutCredentialRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    info = await services.credentials.put(user_id, provider, payload.api_key)
    return success_response(request=request, data=_credential_payload(info))


@router.get("", response_model=SuccessEnvelope[list[CredentialResponse]])
async def list_credentials(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    infos = await services.credentials.list_for(user_id)
    return success_response(
        request=request,
        data=[_credential_payload(info) for info in infos],
    )


class ValidateCredentialResponse(BaseModel):
    provider: str
    validation_status: str
    message: str


@router.post(
    "/{provider}/validate",
    response_model=SuccessEnvelope[ValidateCredentialResponse],
    responses=CREDENTIAL_VALIDATION_ERROR_RESPONSES,
)
async def validate_credential(
    provider: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    checker = services.key_checkers.get(provider)
    if checker is None:
        raise ValidationError(f"unknown provider '{provider}'", details={"provider": provider})
    outcome = await services.credentials.validate(user_id, provider, checker)
    return success_response(
        request=request,
        data=ValidateCredentialResponse(
            provider=provider,
            validation_status="valid" if outcome.valid else "invalid",
            message=outcome.message,
        ),
    )
