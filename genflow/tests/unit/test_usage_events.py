from __future__ import annotations

from genflow.services.usage import sanitize_metadata


def test_sanitize_metadata_redacts_secret_looking_keys() -> None:
    payload = {
        "workflow_id": "wf1",
        "api_key": "sk-1",
        "Authorization": "Bearer x",
        "nested": {"refresh_token": "t", "key": "k", "keyframe": 3},
        "items": [{"password": "p"}, {"amount": 5}],
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized == {
        "workflow_id": "wf1",
        "api_key": "[REDACTED]",
        "Authorization": "[REDACTED]",
        "nested": {"refresh_token": "[REDACTED]", "key": "[REDACTED]", "keyframe": 3},
        "items": [{"password": "[REDACTED]"}, {"amount": 5}],
    }
    assert payload["api_key"] == "sk-1"
