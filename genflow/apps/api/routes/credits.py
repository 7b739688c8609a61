from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from genflow.apps.api.deps import get_current_user_id, get_services
from genflow.apps.api.openapi import WORKFLOW_ERROR_RESPONSES
from genflow.apps.api.response import SuccessEnvelope, success_response
from genflow.core.container import Services
from genflow.services.usage import record_usage_event, sanitize_metadata


router = APIRouter(prefix="/credits", tags=["credits"], responses=WORKFLOW_ERROR_RESPONSES)


class BalanceResponse(BaseModel):
    credits: int
    credits_used: int


class DebitRequest(BaseModel):
    amount: int = Field(gt=0)
    reason: str = Field(min_length=1, max_length=255)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DebitResponse(BaseModel):
    remaining_credits: int
    transaction_id: str


@router.get("/balance", response_model=SuccessEnvelope[BalanceResponse])
async def get_balance(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    snapshot = await services.ledger.balance(user_id)
    return success_response(
        request=request,
        data=BalanceResponse(credits=snapshot.credits, credits_used=snapshot.credits_used),
    )


@router.post("/debit", response_model=SuccessEnvelope[DebitResponse])
async def debit_credits(
    payload: DebitRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> dict:
    # Direct debits bypass workflows but write the same ledger rows.
    metadata = sanitize_metadata(payload.metadata)
    charged = await services.ledger.debit(user_id, payload.amount, payload.reason, metadata)
    await record_usage_event(
        services.session_factory,
        user_id=user_id,
        event="credits_debited",
        metadata={"amount": payload.amount, "reason": payload.reason, "balance": charged.new_balance},
    )
    return success_response(
        request=request,
        data=DebitResponse(remaining_credits=charged.new_balance, transaction_id=charged.transaction_id),
    )
