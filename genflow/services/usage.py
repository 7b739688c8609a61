from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from genflow.domain.models import UsageEvent


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "apikey", "authorization", "token", "secret", "password", "credential"]
_SENSITIVE_EXACT_KEYS = {"key"}
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return lowered in _SENSITIVE_EXACT_KEYS or any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


async def record_usage_event(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    user_id: str,
    event: str,
    workflow_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    occurred_at: datetime | None = None,
) -> None:
    # Best-effort: usage rows feed analytics and must never fail a workflow.
    row = UsageEvent(
        id=uuid4().hex,
        user_id=user_id,
        event=event,
        workflow_id=workflow_id,
        metadata_json=sanitize_metadata(metadata or {}),
        occurred_at=occurred_at or datetime.now(timezone.utc),
    )
    try:
        async with session_factory() as session:
            session.add(row)
            await session.commit()
    except SQLAlchemyError as exc:
        logger.warning("usage_event_write_failed event=%s user=%s", event, user_id, exc_info=exc)
