from __future__ import annotations

import json

import httpx
import pytest

from genflow.core.config import Settings
from genflow.core.errors import ProviderFailure
from genflow.domain.workflows import StepKind
from genflow.providers.generation.factory import build_provider_registry, key_checkers_for
from genflow.providers.generation.fake import FakeGenerationProvider
from genflow.providers.generation.fal import FalVideoGenerator
from genflow.providers.generation.openai import OpenAIImageGenerator, OpenAIPromptEnhancer
from genflow.services.resilience import RetryPolicy


SECRET = "sk-never-log-me"


def _settings(**overrides) -> Settings:
    values = dict(
        _env_file=None,
        openai_base_url="https://api.openai.test/v1",
        fal_base_url="https://queue.fal.test",
        video_poll_interval_s=0.0,
        video_poll_max_attempts=3,
    )
    values.update(overrides)
    return Settings(**values)


async def _no_sleep(_seconds: float) -> None:
    return None


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_prompt_enhancer_parses_chat_completion() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"choices": [{"message": {"content": "  a lighthouse, golden hour, 35mm  "}}], "usage": {"total_tokens": 42}},
        )

    adapter = OpenAIPromptEnhancer(_settings(), _client(handler))
    result = await adapter.generate(SECRET, {"prompt": "a lighthouse", "context": "image"})

    assert result.success
    assert result.output == {"enhanced_prompt": "a lighthouse, golden hour, 35mm", "tokens_used": 42}
    assert str(seen[0].url) == "https://api.openai.test/v1/chat/completions"
    assert seen[0].headers["Authorization"] == f"Bearer {SECRET}"
    assert json.loads(seen[0].content)["model"] == "gpt-4o-mini"


@pytest.mark.asyncio
async def test_image_generator_maps_auth_failure_without_leaking_key() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": f"Incorrect API key provided: {SECRET}"}})

    adapter = OpenAIImageGenerator(_settings(), _client(handler))
    result = await adapter.generate(SECRET, {"prompt": "p", "size": "1024x1792", "quality": "hd", "style": "vivid"})

    assert not result.success
    assert "rejected the API key" in result.error
    assert SECRET not in result.error


@pytest.mark.asyncio
async def test_image_generator_returns_url_and_dimensions() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["size"] == "1792x1024"
        return httpx.Response(200, json={"data": [{"url": "https://img.test/1.png", "revised_prompt": "rp"}]})

    adapter = OpenAIImageGenerator(_settings(), _client(handler))
    result = await adapter.generate(SECRET, {"prompt": "p", "size": "1792x1024", "quality": "standard", "style": "natural"})

    assert result.success
    assert result.output == {"image_url": "https://img.test/1.png", "revised_prompt": "rp", "width": 1792, "height": 1024}


@pytest.mark.asyncio
async def test_openai_retries_server_errors_under_policy() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            return httpx.Response(503, json={"error": {"message": "overloaded"}})
        return httpx.Response(200, json={"choices": [{"message": {"content": "better prompt"}}]})

    adapter = OpenAIPromptEnhancer(
        _settings(),
        _client(handler),
        retry_policy=RetryPolicy(max_attempts=2, backoff_ms=1),
    )
    result = await adapter.generate(SECRET, {"prompt": "prompt"})

    assert result.success
    assert calls["count"] == 2


@pytest.mark.asyncio
async def test_fal_video_submits_polls_and_fetches() -> None:
    statuses = iter(["IN_QUEUE", "IN_PROGRESS", "COMPLETED"])
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url)))
        assert request.headers["Authorization"] == f"Key {SECRET}"
        if request.method == "POST":
            body = json.loads(request.content)
            assert body["image_url"] == "https://img.test/1.png"
            assert body["duration"] == "8s"
            return httpx.Response(200, json={"request_id": "req-1"})
        if request.url.path.endswith("/status"):
            return httpx.Response(200, json={"status": next(statuses)})
        return httpx.Response(200, json={"video": {"url": "https://video.test/1.mp4"}})

    adapter = FalVideoGenerator(_settings(video_poll_max_attempts=5), _client(handler), sleep=_no_sleep)
    result = await adapter.generate(
        SECRET,
        {"image_url": "https://img.test/1.png", "duration": 8, "resolution": "1080p", "generate_audio": True},
    )

    assert result.success
    assert result.output["video_url"] == "https://video.test/1.mp4"
    assert result.output["thumbnail_url"] == "https://img.test/1.png"
    assert result.output["has_audio"] is True
    assert seen[0] == ("POST", "https://queue.fal.test/fal-ai/veo3/image-to-video")
    assert seen[1] == ("GET", "https://queue.fal.test/fal-ai/veo3/requests/req-1/status")
    assert seen[-1] == ("GET", "https://queue.fal.test/fal-ai/veo3/requests/req-1")


@pytest.mark.asyncio
async def test_fal_video_times_out_when_poll_budget_runs_out() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"request_id": "req-2"})
        return httpx.Response(200, json={"status": "IN_PROGRESS"})

    adapter = FalVideoGenerator(_settings(video_poll_max_attempts=2), _client(handler), sleep=_no_sleep)
    result = await adapter.generate(SECRET, {"image_url": "https://img.test/1.png", "duration": 5, "resolution": "720p"})

    assert not result.success
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_fal_video_reports_provider_failure_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(200, json={"request_id": "req-3"})
        return httpx.Response(200, json={"status": "FAILED"})

    adapter = FalVideoGenerator(_settings(), _client(handler), sleep=_no_sleep)
    result = await adapter.generate(SECRET, {"image_url": "https://img.test/1.png", "duration": 5, "resolution": "720p"})

    assert not result.success
    assert "FAILED" in result.error


@pytest.mark.asyncio
async def test_transport_errors_become_failed_results() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    adapter = OpenAIPromptEnhancer(_settings(), _client(handler))
    result = await adapter.generate(SECRET, {"prompt": "prompt"})

    assert not result.success
    assert "ConnectError" in result.error


def test_registry_selects_fakes_or_live_adapters() -> None:
    fakes = build_provider_registry(_settings(provider_mode="fake"))
    assert all(isinstance(provider, FakeGenerationProvider) for provider in fakes.values())
    live = build_provider_registry(_settings(provider_mode="live"))
    assert isinstance(live[StepKind.ENHANCE_PROMPT], OpenAIPromptEnhancer)
    assert isinstance(live[StepKind.GENERATE_IMAGE], OpenAIImageGenerator)
    assert isinstance(live[StepKind.GENERATE_VIDEO], FalVideoGenerator)


def test_key_checkers_follow_the_step_that_uses_each_credential() -> None:
    live = build_provider_registry(_settings(provider_mode="live"))
    checkers = key_checkers_for(live)
    assert checkers["openai"] is live[StepKind.ENHANCE_PROMPT]
    assert checkers["image_gen"] is live[StepKind.GENERATE_IMAGE]
    assert checkers["video_gen"] is live[StepKind.GENERATE_VIDEO]


@pytest.mark.asyncio
async def test_openai_key_check_lists_models() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.headers["Authorization"] == f"Bearer {SECRET}":
            return httpx.Response(200, json={"data": [{"id": "gpt-4o-mini"}]})
        return httpx.Response(401, json={"error": {"message": "Incorrect API key provided"}})

    adapter = OpenAIPromptEnhancer(_settings(), _client(handler))

    accepted = await adapter.check_key(SECRET)
    rejected = await adapter.check_key("sk-revoked")

    assert accepted.valid
    assert not rejected.valid
    assert "401" in rejected.message
    assert "sk-revoked" not in rejected.message
    assert (seen[0].method, str(seen[0].url)) == ("GET", "https://api.openai.test/v1/models")


@pytest.mark.asyncio
async def test_key_check_without_a_verdict_raises_provider_failure() -> None:
    def rate_limited(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Rate limit reached"}})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(ProviderFailure) as excinfo:
        await OpenAIImageGenerator(_settings(), _client(rate_limited)).check_key(SECRET)
    assert excinfo.value.details["status_code"] == 429

    with pytest.raises(ProviderFailure, match="ConnectError"):
        await FalVideoGenerator(_settings(), _client(unreachable), sleep=_no_sleep).check_key(SECRET)


@pytest.mark.asyncio
async def test_fal_key_check_reads_status_of_unknown_request() -> None:
    seen: list[tuple[str, str]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, str(request.url)))
        if request.headers["Authorization"] == f"Key {SECRET}":
            return httpx.Response(404, json={"detail": "Request not found"})
        return httpx.Response(401, json={"detail": "Invalid key"})

    adapter = FalVideoGenerator(_settings(), _client(handler), sleep=_no_sleep)

    assert (await adapter.check_key(SECRET)).valid
    assert not (await adapter.check_key("fal-revoked")).valid
    method, url = seen[0]
    assert method == "GET"
    assert url.startswith("https://queue.fal.test/fal-ai/veo3/requests/")
    assert url.endswith("/status")
