from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status

from genflow.core.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services


async def get_current_user_id(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    services: Services = Depends(get_services),
) -> str:
    # Authentication happens upstream; the gateway forwards the resolved user id.
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"code": "AUTH_UNAUTHORIZED", "message": "Missing X-User-Id header"},
        )
    # First contact provisions the user with the default opening balance.
    await services.ledger.ensure_user(user_id, initial_credits=services.settings.default_user_credits)
    return user_id
