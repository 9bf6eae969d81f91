"""End-to-end tests for the proxy endpoints against faked backends."""

import json
import tempfile
from pathlib import Path

import httpx
import pytest

from config import load_config
from exchange_log import ExchangeLog
from llm_proxy import create_app
from ollama_backend import OllamaBackend
from openai_backend import OpenAIBackend


def sse(*payloads) -> bytes:
    lines = [f"data: {json.dumps(p)}\n\n" for p in payloads]
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


class FakeBackend:
    """Answers every request with one canned response and records requests."""

    def __init__(self, body: bytes, status_code: int = 200):
        self.body = body
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, content=self.body)

    @property
    def last_json(self) -> dict:
        return json.loads(self.requests[-1].content)


@pytest.fixture
def log_dir() -> Path:
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


def build_app(fake: FakeBackend, log_dir: Path, backend_type: str = "openai", **overrides):
    config = load_config(backend_type=backend_type, **overrides)
    backend_class = OpenAIBackend if backend_type == "openai" else OllamaBackend
    backend = backend_class(config.backend_url, 5.0, transport=httpx.MockTransport(fake))
    return create_app(config, backend=backend, exchange_log=ExchangeLog(log_dir=log_dir))


def client_for(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://proxy")


async def only_record(app) -> dict:
    await app.state.handler.drain()
    summaries = await app.state.exchange_log.list_recent()
    assert len(summaries) == 1
    return await app.state.exchange_log.get(summaries[0].id)


class TestGenerateEndpoint:
    """Tests for /api/generate."""

    @pytest.mark.asyncio
    async def test_streaming_generate(self, log_dir: Path) -> None:
        """Test a streamed completion is relayed line by line and recorded."""
        fake = FakeBackend(sse({"choices": [{"text": "Hel"}]}, {"choices": [{"text": "lo"}]}))
        app = build_app(fake, log_dir)

        async with client_for(app) as client:
            response = await client.post(
                "/api/generate",
                json={"model": "m", "prompt": "Say hello", "stream": True},
            )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        lines = [json.loads(line) for line in response.text.splitlines()]
        assert [line["response"] for line in lines[:2]] == ["Hel", "lo"]
        assert lines[-1]["done"] is True
        assert lines[-1]["done_reason"] == "stop"
        assert lines[-1]["eval_count"] == 2

        record = await only_record(app)
        assert record["status_code"] == 200
        assert record["state"] == "Completed"
        assert record["response"] == "Hello"
        assert record["last_message"] == "Say hello"
        assert record["backend_url"].endswith("/v1/completions")
        assert "[DONE]" in record["backend_response"]
        assert len(record["frontend_response"].splitlines()) == 3

    @pytest.mark.asyncio
    async def test_non_streaming_generate(self, log_dir: Path) -> None:
        """Test a non-streaming request gets exactly one final JSON object."""
        fake = FakeBackend(json.dumps({"choices": [{"text": "Hi"}]}).encode())
        app = build_app(fake, log_dir)

        async with client_for(app) as client:
            response = await client.post("/api/generate", json={"model": "m", "prompt": "p"})

        assert response.headers["content-type"].startswith("application/json")
        body = response.json()
        assert body["response"] == "Hi"
        assert body["done"] is True
        assert fake.last_json["stream"] is False

    @pytest.mark.asyncio
    async def test_backend_stream_ends_without_final(self, log_dir: Path) -> None:
        """Test a truncated backend stream is recorded as completed with an error."""
        fake = FakeBackend(b'{"response":"Hel","done":false}\n')
        app = build_app(fake, log_dir, backend_type="ollama")

        async with client_for(app) as client:
            response = await client.post(
                "/api/generate", json={"model": "m", "prompt": "p", "stream": True}
            )

        assert response.status_code == 200
        lines = [json.loads(line) for line in response.text.splitlines()]
        assert [line["response"] for line in lines] == ["Hel"]

        record = await only_record(app)
        assert record["state"] == "Completed"
        assert "without a final increment" in record["error"]
        assert record["backend_response"] == '{"response":"Hel","done":false}\n'

    @pytest.mark.asyncio
    async def test_backend_error(self, log_dir: Path) -> None:
        """Test a failing backend yields 500 and an error record."""
        app = build_app(FakeBackend(b"overloaded", status_code=500), log_dir)

        async with client_for(app) as client:
            response = await client.post(
                "/api/generate", json={"model": "m", "prompt": "p", "stream": True}
            )

        assert response.status_code == 500
        assert "overloaded" in response.text

        record = await only_record(app)
        assert record["status_code"] == 500
        assert "overloaded" in record["error"]
        assert record["state"] == "BackendCallFailed"
        assert record["frontend_response"] == ""
        assert record["backend_response"] == "overloaded"

    @pytest.mark.asyncio
    async def test_invalid_body(self, log_dir: Path) -> None:
        """Test malformed JSON is rejected without calling the backend."""
        fake = FakeBackend(b"")
        app = build_app(fake, log_dir)

        async with client_for(app) as client:
            response = await client.post("/api/generate", content=b"{not json")

        assert response.status_code == 400
        assert response.text == "Invalid request body"
        assert fake.requests == []
        assert await app.state.exchange_log.count() == 0

    @pytest.mark.asyncio
    async def test_wrong_method(self, log_dir: Path) -> None:
        app = build_app(FakeBackend(b""), log_dir)

        async with client_for(app) as client:
            response = await client.get("/api/generate")

        assert response.status_code == 405


class TestChatEndpoint:
    """Tests for /api/chat."""

    @pytest.mark.asyncio
    async def test_blacklisted_tool_not_forwarded(self, log_dir: Path) -> None:
        """Test blacklisted tools are removed before the backend call."""
        fake = FakeBackend(sse({"choices": [{"delta": {}, "finish_reason": "stop"}]}))
        app = build_app(fake, log_dir, tool_blacklist=["dangerous_tool"])

        async with client_for(app) as client:
            response = await client.post(
                "/api/chat",
                json={
                    "model": "m",
                    "stream": True,
                    "messages": [{"role": "user", "content": "hi"}],
                    "tools": [
                        {"type": "function", "function": {"name": "safe_tool"}},
                        {"type": "function", "function": {"name": "dangerous_tool"}},
                    ],
                },
            )

        assert response.status_code == 200
        tool_names = [tool["function"]["name"] for tool in fake.last_json["tools"]]
        assert tool_names == ["safe_tool"]
        assert "dangerous_tool" not in fake.requests[-1].content.decode()

    @pytest.mark.asyncio
    async def test_injection_reaches_backend(self, log_dir: Path) -> None:
        """Test injected text is sent while the record keeps the original message."""
        fake = FakeBackend(
            sse(
                {"choices": [{"delta": {"content": "Ok"}}]},
                {"choices": [{"delta": {}, "finish_reason": "stop"}]},
            )
        )
        app = build_app(
            fake, log_dir, injection_enabled=True, injection_text="Be brief."
        )

        async with client_for(app) as client:
            response = await client.post(
                "/api/chat",
                json={
                    "model": "m",
                    "stream": True,
                    "messages": [{"role": "user", "content": "Explain tides"}],
                },
            )

        lines = [json.loads(line) for line in response.text.splitlines()]
        assert lines[0]["message"] == {"role": "assistant", "content": "Ok"}
        assert fake.last_json["messages"][-1]["content"] == "Explain tides Be brief."

        record = await only_record(app)
        assert record["last_message"] == "Explain tides"
        assert record["endpoint"] == "/api/chat"

    @pytest.mark.asyncio
    async def test_ollama_passthrough(self, log_dir: Path) -> None:
        """Test chat against an Ollama backend relays its lines."""
        body = (
            json.dumps({"model": "m", "message": {"content": "Hi"}, "done": False}) + "\n"
            + json.dumps({"model": "m", "message": {"content": ""}, "done": True}) + "\n"
        ).encode()
        fake = FakeBackend(body)
        app = build_app(fake, log_dir, backend_type="ollama")

        async with client_for(app) as client:
            response = await client.post(
                "/api/chat",
                json={"model": "m", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
            )

        lines = [json.loads(line) for line in response.text.splitlines()]
        assert lines[0]["message"]["role"] == "assistant"
        assert lines[-1]["load_duration"] == 1
        assert str(fake.requests[-1].url).endswith("/api/chat")

        record = await only_record(app)
        assert record["backend_type"] == "ollama"


class TestModelEndpoints:
    """Tests for /api/tags and /api/show."""

    @pytest.mark.asyncio
    async def test_tags(self, log_dir: Path) -> None:
        fake = FakeBackend(json.dumps({"data": [{"id": "qwen"}]}).encode())
        app = build_app(fake, log_dir)

        async with client_for(app) as client:
            response = await client.get("/api/tags")

        assert response.status_code == 200
        assert [m["name"] for m in response.json()["models"]] == ["qwen"]

        record = await only_record(app)
        assert record["endpoint"] == "/api/tags"
        assert record["method"] == "GET"

    @pytest.mark.asyncio
    async def test_show(self, log_dir: Path) -> None:
        app = build_app(FakeBackend(b""), log_dir)

        async with client_for(app) as client:
            response = await client.post("/api/show", json={"name": "llama3"})

        assert response.json() == {"name": "llama3", "size": 0, "digest": ""}
        record = await only_record(app)
        assert record["model"] == "llama3"


class TestAdminEndpoints:
    """Tests for health, log browsing and configuration endpoints."""

    @pytest.mark.asyncio
    async def test_health(self, log_dir: Path) -> None:
        app = build_app(FakeBackend(b""), log_dir)

        async with client_for(app) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.text == "OK"

    @pytest.mark.asyncio
    async def test_logs(self, log_dir: Path) -> None:
        """Test listing and fetching logged exchanges."""
        app = build_app(FakeBackend(b""), log_dir)

        async with client_for(app) as client:
            await client.post("/api/show", json={"name": "a"})
            await client.post("/api/show", json={"name": "b"})
            await app.state.handler.drain()

            listing = (await client.get("/logs", params={"limit": 1})).json()
            record_id = listing["records"][0]["id"]
            record = (await client.get(f"/logs/{record_id}")).json()
            missing = await client.get("/logs/9999")

        assert listing["total"] == 2
        assert len(listing["records"]) == 1
        assert listing["records"][0]["model"] == "b"
        assert record["endpoint"] == "/api/show"
        assert missing.status_code == 404

    @pytest.mark.asyncio
    async def test_config(self, log_dir: Path) -> None:
        app = build_app(FakeBackend(b""), log_dir, tool_blacklist=["rm"])

        async with client_for(app) as client:
            config = (await client.get("/config")).json()

        assert config["backend_type"] == "openai"
        assert config["tool_blacklist"] == ["rm"]
        assert config["exchange_log"]["directory"] == str(log_dir)
