import json
from collections.abc import AsyncGenerator, Callable

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from genai_gateway.core.config import Settings, settings

# Override settings for tests
settings.app_env = "development"
settings.sentry_dsn = ""

from genai_gateway.core.dependencies import build_orchestrator, get_orchestrator  # noqa: E402
from genai_gateway.main import app  # noqa: E402


def make_settings(**overrides) -> Settings:
    """Settings with every vendor configured, isolated from the local .env file."""
    values = dict(
        openai_api_key="sk-test-fake-key",
        gemini_api_key="gemini-test-key",
        anthropic_api_key="sk-ant-test-key",
        azure_openai_api_key="azure-test-key",
        azure_openai_endpoint="https://test-resource.openai.azure.com",
        chat_timeout_seconds=5.0,
        image_timeout_seconds=5.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def sse_body(*payloads) -> bytes:
    """Encode payloads as SSE ``data:`` frames (strings are sent verbatim)."""
    frames = []
    for p in payloads:
        frames.append(f"data: {p if isinstance(p, str) else json.dumps(p)}\n\n")
    return "".join(frames).encode()


def openai_chunk(content: str | None = None, finish_reason: str | None = None, model: str = "gpt-4o-mini") -> dict:
    delta = {"content": content} if content is not None else {}
    return {"model": model, "choices": [{"index": 0, "delta": delta, "finish_reason": finish_reason}]}


class StubVendor:
    """Programmable vendor behind an httpx.MockTransport.

    ``handler`` decides the response; every request is kept in ``requests``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handler: Callable = lambda request: httpx.Response(404)

    def respond_json(self, data: dict, status_code: int = 200) -> None:
        self.handler = lambda request: httpx.Response(status_code, json=data)

    def respond_stream(self, body: bytes, status_code: int = 200) -> None:
        self.handler = lambda request: httpx.Response(
            status_code, content=body, headers={"Content-Type": "text/event-stream"}
        )

    async def _dispatch(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.handler(request)
        if not isinstance(response, httpx.Response):
            response = await response
        return response

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self._dispatch)

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def vendor() -> StubVendor:
    return StubVendor()


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def orchestrator(test_settings, vendor):
    return build_orchestrator(test_settings, transport=vendor.transport)


@pytest.fixture
async def client(orchestrator) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
