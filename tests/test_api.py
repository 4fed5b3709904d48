"""End-to-end API tests: FastAPI app → orchestrator → adapter → stub vendor."""

from __future__ import annotations

import asyncio
import json
import time

import httpx
from prometheus_client import REGISTRY
from prometheus_client.parser import text_string_to_metric_families

from genai_gateway.core.dependencies import build_orchestrator, get_orchestrator
from genai_gateway.main import app
from tests.conftest import make_settings, openai_chunk, sse_body


def _chat_body(**overrides) -> dict:
    body = {
        "provider": "openai",
        "model": "gpt-4o-mini",
        "messages": [{"role": "user", "content": "What is 2+2?"}],
        "stream": False,
    }
    body.update(overrides)
    return body


def _openai_completion(content: str = "4") -> dict:
    return {
        "model": "gpt-4o-mini",
        "choices": [{"message": {"role": "assistant", "content": content}}],
        "usage": {"prompt_tokens": 14, "completion_tokens": 1, "total_tokens": 15},
    }


def _parse_sse(text: str) -> list[dict]:
    frames = [f for f in text.split("\n\n") if f]
    assert all(f.startswith("data: ") for f in frames)
    return [json.loads(f[len("data: ") :]) for f in frames]


# ==========================================================================
# POST /chat
# ==========================================================================


class TestChatEndpoint:
    async def test_non_streaming_success(self, client, vendor):
        vendor.respond_json(_openai_completion("4"))

        resp = await client.post("/chat", json=_chat_body())

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["provider"] == "openai"
        assert data["response"] == "4"
        assert data["usage"]["total_tokens"] == 15
        assert data["metadata"]["model"] == "gpt-4o-mini"
        assert resp.headers["X-RateLimit-Limit"] == "30"
        assert resp.headers["X-RateLimit-Remaining"] == "29"
        assert "X-Request-ID" in resp.headers

    async def test_streaming_sse(self, client, vendor):
        vendor.respond_stream(
            sse_body(openai_chunk("2+2"), openai_chunk(" is 4"), openai_chunk(finish_reason="stop"), "[DONE]")
        )

        resp = await client.post("/chat", json=_chat_body(stream=True))

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.headers["X-RateLimit-Remaining"] == "29"
        events = _parse_sse(resp.text)
        assert events[0] == {"type": "metadata", "metadata": {"model": "gpt-4o-mini"}}
        assert "".join(e["delta"] for e in events if e["type"] == "content") == "2+2 is 4"
        done = events[-1]
        assert done["type"] == "done"
        assert done["metadata"]["provider"] == "openai"
        assert done["metadata"]["finish_reason"] == "stop"
        assert "duration_ms" in done["metadata"]
        assert sum(1 for e in events if e["type"] in ("done", "error")) == 1

    async def test_stream_truncated_ends_with_error_frame(self, client, vendor):
        vendor.respond_stream(sse_body(openai_chunk("half")))

        resp = await client.post("/chat", json=_chat_body(stream=True))

        assert resp.status_code == 200
        events = _parse_sse(resp.text)
        assert events[-1] == {"type": "error", "error": "openai stream ended before completion"}

    async def test_stream_is_default(self, client, vendor):
        vendor.respond_stream(sse_body("[DONE]"))
        body = _chat_body()
        del body["stream"]

        resp = await client.post("/chat", json=body)

        assert resp.headers["content-type"].startswith("text/event-stream")
        assert vendor.last_json["stream"] is True

    async def test_validation_error(self, client, vendor):
        resp = await client.post("/chat", json=_chat_body(temperature=2.5))

        assert resp.status_code == 400
        data = resp.json()
        assert data["success"] is False
        assert data["type"] == "validation_error"
        assert data["details"][0].startswith("temperature:")
        assert vendor.requests == []
        # Rejected before the rate check
        assert "X-RateLimit-Limit" not in resp.headers

    async def test_invalid_json(self, client):
        resp = await client.post("/chat", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json()["details"] == ["body: must be valid JSON"]

    async def test_vendor_auth_failure(self, client, vendor):
        vendor.respond_json({"error": {"message": "Incorrect API key provided: sk-test"}}, status_code=401)

        resp = await client.post("/chat", json=_chat_body())

        assert resp.status_code == 401
        data = resp.json()
        assert data["type"] == "provider_error"
        assert data["provider"] == "openai"
        assert data["details"] == ["Incorrect API key provided: sk-test"]
        assert resp.headers["X-RateLimit-Remaining"] == "29"

    async def test_vendor_quota_failure(self, client, vendor):
        vendor.respond_json({"error": {"message": "You exceeded your current quota"}}, status_code=429)
        resp = await client.post("/chat", json=_chat_body())
        assert resp.status_code == 402

    async def test_streaming_vendor_failure_is_http_error(self, client, vendor):
        vendor.respond_json({"error": {"message": "Rate limit reached for gpt-4o-mini"}}, status_code=429)
        resp = await client.post("/chat", json=_chat_body(stream=True))
        assert resp.status_code == 429
        assert resp.json()["type"] == "provider_error"

    async def test_unconfigured_provider(self, vendor):
        orchestrator = build_orchestrator(make_settings(anthropic_api_key=""), transport=vendor.transport)
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
                resp = await ac.post("/chat", json=_chat_body(provider="anthropic", model="claude-3-5-haiku"))
        finally:
            app.dependency_overrides.clear()

        assert resp.status_code == 503
        assert resp.json()["type"] == "provider_not_configured"
        assert "X-RateLimit-Limit" in resp.headers
        assert vendor.requests == []

    async def test_chat_rate_limit(self, vendor):
        orchestrator = build_orchestrator(make_settings(chat_rate_limit=2), transport=vendor.transport)
        vendor.respond_json(_openai_completion())
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
                statuses = [(await ac.post("/chat", json=_chat_body())).status_code for _ in range(3)]
                other_client = await ac.post("/chat", json=_chat_body(), headers={"X-Forwarded-For": "203.0.113.9"})
        finally:
            app.dependency_overrides.clear()

        assert statuses == [200, 200, 429]
        assert other_client.status_code == 200
        assert len(vendor.requests) == 3


# ==========================================================================
# POST /image
# ==========================================================================


class TestImageEndpoint:
    async def test_image_success(self, client, vendor):
        vendor.respond_json({"data": [{"url": "https://img.test/fox.png", "revised_prompt": "A watercolor fox"}]})

        resp = await client.post("/image", json={"provider": "openai", "prompt": "A fox", "quality": "hd"})

        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["count"] == 1
        assert data["images"][0]["url"] == "https://img.test/fox.png"
        assert data["images"][0]["quality"] == "hd"
        assert data["metadata"]["prompt"] == {"original": "A fox", "revised": "A watercolor fox"}
        assert resp.headers["X-RateLimit-Limit"] == "10"

    async def test_azure_image_base64(self, client, vendor):
        vendor.respond_json({"data": [{"b64_json": "aGVsbG8="}]})

        resp = await client.post("/image", json={"provider": "azure", "prompt": "A fox"})

        assert resp.status_code == 200
        image = resp.json()["images"][0]
        assert image["base64"] == "aGVsbG8="
        assert image["mimeType"] == "image/png"
        assert image["url"] is None

    async def test_eleventh_image_is_rate_limited(self, client, vendor):
        vendor.respond_json({"data": [{"url": "https://img.test/fox.png"}]})

        for _ in range(10):
            resp = await client.post("/image", json={"provider": "openai", "prompt": "A fox"})
            assert resp.status_code == 200

        resp = await client.post("/image", json={"provider": "openai", "prompt": "A fox"})

        assert resp.status_code == 429
        assert int(resp.headers["Retry-After"]) > 0
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        data = resp.json()
        assert data["type"] == "rate_limit_exceeded"
        assert data["retryAfter"] > 0
        assert len(vendor.requests) == 10

    async def test_image_provider_validation(self, client):
        resp = await client.post("/image", json={"provider": "anthropic", "prompt": "A fox"})
        assert resp.status_code == 400
        assert resp.json()["details"][0].startswith("provider:")

    async def test_image_content_policy(self, client, vendor):
        vendor.respond_json(
            {"error": {"message": "Your request was rejected because it violates our content policy."}},
            status_code=400,
        )
        resp = await client.post("/image", json={"provider": "openai", "prompt": "A fox"})
        assert resp.status_code == 400
        assert resp.json()["type"] == "provider_error"


# ==========================================================================
# GET /health, /metrics
# ==========================================================================


class TestHealthEndpoint:
    async def test_all_configured(self, client, vendor):
        resp = await client.get("/health")

        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "healthy"
        assert data["providers"] == {"openai": True, "gemini": True, "anthropic": True, "azure": True}
        assert data["endpoints"]["chat"] == "/chat"
        assert vendor.requests == []

    async def test_degraded(self):
        orchestrator = build_orchestrator(make_settings(azure_openai_endpoint="", gemini_api_key=""))
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as ac:
                resp = await ac.get("/health")
        finally:
            app.dependency_overrides.clear()

        data = resp.json()
        assert resp.status_code == 200
        assert data["status"] == "degraded"
        assert data["providers"]["azure"] is False
        assert data["providers"]["gemini"] is False
        assert data["providers"]["openai"] is True


class TestMetricsEndpoint:
    async def test_metrics_exposed(self, client, vendor):
        labels = {"provider": "openai", "operation": "chat", "outcome": "ok"}
        before = REGISTRY.get_sample_value("provider_requests_total", labels) or 0
        vendor.respond_json(_openai_completion())
        await client.post("/chat", json=_chat_body())

        resp = await client.get("/metrics")

        assert resp.status_code == 200
        families = {family.name: family for family in text_string_to_metric_families(resp.text)}
        assert "http_requests" in families
        exposed = {
            sample.value
            for sample in families["provider_requests"].samples
            if sample.name == "provider_requests_total" and sample.labels == labels
        }
        assert exposed == {before + 1}


class TestCors:
    async def test_localhost_origin_allowed_in_development(self, client):
        resp = await client.options(
            "/chat",
            headers={"Origin": "http://localhost:4321", "Access-Control-Request-Method": "POST"},
        )
        assert resp.status_code == 200
        assert resp.headers["access-control-allow-origin"] == "http://localhost:4321"

    async def test_unknown_origin_rejected(self, client):
        resp = await client.options(
            "/chat",
            headers={"Origin": "https://evil.example", "Access-Control-Request-Method": "POST"},
        )
        assert "access-control-allow-origin" not in resp.headers


class TestClientDisconnect:
    """A client that leaves mid-request frees the vendor call instead of waiting it out."""

    @staticmethod
    async def _call_and_leave(path: str, payload: dict, leave_after: float = 0.2) -> list[dict]:
        body = json.dumps(payload).encode()
        body_sent = False
        sent: list[dict] = []

        async def receive():
            nonlocal body_sent
            if not body_sent:
                body_sent = True
                return {"type": "http.request", "body": body, "more_body": False}
            await asyncio.sleep(leave_after)
            return {"type": "http.disconnect"}

        async def send(message):
            sent.append(message)

        scope = {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "POST",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "root_path": "",
            "query_string": b"",
            "headers": [(b"host", b"testserver"), (b"content-type", b"application/json")],
            "client": ("127.0.0.1", 50000),
            "server": ("testserver", 80),
        }
        await asyncio.wait_for(app(scope, receive, send), timeout=5)
        return sent

    @staticmethod
    def _slow_vendor(vendor, state: dict, response: dict) -> None:
        async def handler(request):
            try:
                await asyncio.sleep(2)
            except asyncio.CancelledError:
                state["cancelled"] = True
                raise
            state["finished"] = True
            return httpx.Response(200, json=response)

        vendor.handler = handler

    async def test_buffered_chat_vendor_call_cancelled(self, orchestrator, vendor):
        state = {"cancelled": False, "finished": False}
        self._slow_vendor(vendor, state, _openai_completion())
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            started = time.perf_counter()
            await self._call_and_leave("/chat", _chat_body())
            elapsed = time.perf_counter() - started
        finally:
            app.dependency_overrides.clear()

        assert state == {"cancelled": True, "finished": False}
        assert elapsed < 1.5

    async def test_image_vendor_call_cancelled(self, orchestrator, vendor):
        state = {"cancelled": False, "finished": False}
        self._slow_vendor(vendor, state, {"data": [{"url": "https://img.test/1.png"}]})
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            await self._call_and_leave("/image", {"provider": "openai", "prompt": "A red fox"})
        finally:
            app.dependency_overrides.clear()

        assert state == {"cancelled": True, "finished": False}

    async def test_completed_request_is_not_cancelled(self, orchestrator, vendor):
        vendor.respond_json(_openai_completion())
        app.dependency_overrides[get_orchestrator] = lambda: orchestrator
        try:
            sent = await self._call_and_leave("/chat", _chat_body(), leave_after=1)
        finally:
            app.dependency_overrides.clear()

        start = next(m for m in sent if m["type"] == "http.response.start")
        assert start["status"] == 200
