from __future__ import annotations

import json
from typing import Callable, Iterator

import httpx
import pytest
import sse_starlette.sse as sse_module
from fastapi.testclient import TestClient

from relaychat.app import create_app

UPSTREAM_BODY = (
    b'data: {"choices":[{"delta":{"role":"assistant"}}]}\n\n'
    b'data: {"choices":[{"delta":{"content":"Hel"}}]}\n\n'
    b": keep-alive\n\n"
    b'data: {"choices":[{"delta":{"content":"lo"}}]}\n\n'
    b"data: [DONE]\n\n"
)

Handler = Callable[[httpx.Request], httpx.Response]


@pytest.fixture(autouse=True)
def reset_sse_app_status() -> Iterator[None]:
    # sse-starlette keeps a process-wide exit event bound to the first loop.
    app_status = getattr(sse_module, "AppStatus", None)
    if app_status is not None and hasattr(app_status, "should_exit_event"):
        app_status.should_exit_event = None
    yield


class RecordingUpstream:
    def __init__(self, handler: Handler) -> None:
        self._handler = handler
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self._handler(request)


def make_client(
    make_settings,
    handler: Handler | None = None,
    **overrides,
) -> tuple[TestClient, RecordingUpstream]:
    upstream = RecordingUpstream(
        handler
        or (lambda request: httpx.Response(200, content=UPSTREAM_BODY))
    )
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    app = create_app(make_settings(**overrides), http_client=http_client)
    return TestClient(app), upstream


def _data_lines(text: str) -> list[str]:
    return [line[len("data: ") :] for line in text.split("\n") if line.startswith("data: ")]


def test_chat_streams_content_frames_and_single_terminal(make_settings) -> None:
    client, upstream = make_client(make_settings)

    response = client.post(
        "/relay/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "provider": "groq"},
    )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    data = _data_lines(response.text)
    assert [json.loads(item) for item in data[:-1]] == [
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}}]},
    ]
    assert data[-1] == "[DONE]"
    assert response.text.count("[DONE]") == 1
    assert response.text.endswith("data: [DONE]\n\n")

    sent = json.loads(upstream.requests[0].content)
    assert upstream.requests[0].headers["Authorization"] == "Bearer test-groq-key"
    assert sent["messages"][0]["role"] == "system"
    assert sent["messages"][1:] == [{"role": "user", "content": "Hi"}]


def test_chat_defaults_to_groq_provider(make_settings) -> None:
    client, upstream = make_client(make_settings)

    response = client.post("/relay/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 200
    assert upstream.requests[0].url.host == "groq.test"


def test_empty_messages_rejected_without_upstream_call(make_settings) -> None:
    client, upstream = make_client(make_settings)

    response = client.post("/relay/chat", json={"messages": []})

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid messages format"
    assert upstream.requests == []


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"messages": "hello"},
        {"messages": [{"role": "user"}]},
        ["not", "an", "object"],
    ],
)
def test_malformed_bodies_are_client_errors(make_settings, body) -> None:
    client, upstream = make_client(make_settings)

    response = client.post("/relay/chat", json=body)

    assert response.status_code == 400
    assert "error" in response.json()
    assert upstream.requests == []


def test_invalid_json_reports_details(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.post(
        "/relay/chat",
        content=b"{not json",
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    payload = response.json()
    assert payload["error"] == "Invalid JSON in request body"
    assert payload["details"]


def test_unknown_provider_is_client_error(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.post(
        "/relay/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "provider": "mystery"},
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Unsupported provider"


def test_missing_credential_names_environment_variable(make_settings) -> None:
    client, upstream = make_client(make_settings, groq_api_key=None)

    response = client.post(
        "/relay/chat",
        json={"messages": [{"role": "user", "content": "Hi"}], "provider": "groq"},
    )

    assert response.status_code == 500
    payload = response.json()
    assert "GROQ_API_KEY" in payload["error"]
    assert "hint" in payload
    assert upstream.requests == []


def test_upstream_error_status_is_passed_through(make_settings) -> None:
    client, _ = make_client(
        make_settings,
        lambda request: httpx.Response(
            429, json={"error": {"message": "Rate limit reached for model"}}
        ),
    )

    response = client.post("/relay/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    assert response.status_code == 429
    assert response.json() == {"error": "Rate limit reached for model"}


def test_mid_stream_failure_still_ends_with_terminal(make_settings) -> None:
    async def body():
        yield b'data: {"choices":[{"delta":{"content":"partial"}}]}\n\n'
        raise httpx.ReadError("upstream reset")

    client, _ = make_client(make_settings, lambda request: httpx.Response(200, content=body()))

    response = client.post("/relay/chat", json={"messages": [{"role": "user", "content": "Hi"}]})

    data = _data_lines(response.text)
    assert json.loads(data[0]) == {"choices": [{"delta": {"content": "partial"}}]}
    error_event = json.loads(data[1])
    assert error_event["kind"] == "network"
    assert "upstream reset" in error_event["error"]
    assert data[-1] == "[DONE]"
    assert response.text.count("[DONE]") == 1


def test_get_is_method_not_allowed(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.get("/relay/chat")

    assert response.status_code == 405
    assert response.json() == {"error": "Method not allowed"}


def test_preflight_short_circuits(make_settings) -> None:
    client, upstream = make_client(make_settings, groq_api_key=None)

    response = client.options(
        "/relay/chat", headers={"Origin": "https://chat.example.com"}
    )

    assert response.status_code == 200
    assert response.content == b""
    assert response.headers["access-control-allow-origin"] == "https://chat.example.com"
    assert response.headers["access-control-allow-credentials"] == "true"
    assert response.headers["access-control-allow-methods"] == "POST, OPTIONS, GET"
    assert upstream.requests == []


def test_errors_carry_cors_headers(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.post(
        "/relay/chat",
        json={"messages": []},
        headers={"Origin": "https://chat.example.com"},
    )

    assert response.status_code == 400
    assert response.headers["access-control-allow-origin"] == "https://chat.example.com"
    assert response.headers["access-control-allow-methods"] == "POST, OPTIONS, GET"


def test_wildcard_origin_without_origin_header(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.get("/health")

    assert response.headers["access-control-allow-origin"] == "*"
    assert "access-control-allow-credentials" not in response.headers


def test_allowlist_rejects_unknown_origin(make_settings) -> None:
    client, _ = make_client(
        make_settings, cors_allowed_origins=["https://chat.example.com"]
    )

    allowed = client.get("/health", headers={"Origin": "https://chat.example.com"})
    rejected = client.get("/health", headers={"Origin": "https://evil.example.com"})

    assert allowed.headers["access-control-allow-origin"] == "https://chat.example.com"
    assert rejected.status_code == 403
    assert rejected.json() == {"error": "Origin not allowed"}
    assert "access-control-allow-origin" not in rejected.headers


def test_unknown_origin_never_reaches_upstream(make_settings) -> None:
    client, upstream = make_client(
        make_settings, cors_allowed_origins=["https://chat.example.com"]
    )

    response = client.post(
        "/relay/chat",
        json={"messages": [{"role": "user", "content": "Hi"}]},
        headers={"Origin": "https://evil.example.com"},
    )
    preflight = client.options(
        "/relay/chat", headers={"Origin": "https://evil.example.com"}
    )

    assert response.status_code == 403
    assert preflight.status_code == 403
    assert upstream.requests == []


def test_requests_without_origin_pass_the_allowlist(make_settings) -> None:
    client, _ = make_client(
        make_settings, cors_allowed_origins=["https://chat.example.com"]
    )

    response = client.get("/health")

    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_health_reports_configured_providers(make_settings) -> None:
    client, _ = make_client(make_settings)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "default_provider": "groq",
        "providers": {"groq": True, "openai": False},
    }


def test_image_returns_provider_bytes(make_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/models/sdxl"
        assert json.loads(request.content) == {"inputs": "a red fox"}
        assert request.headers["Authorization"] == "Bearer test-hf-key"
        return httpx.Response(200, content=b"\x89PNG...", headers={"content-type": "image/png"})

    client, _ = make_client(make_settings, handler)

    response = client.post("/relay/image", json={"prompt": "a red fox"})

    assert response.status_code == 200
    assert response.content == b"\x89PNG..."
    assert response.headers["content-type"] == "image/png"


def test_image_requires_prompt(make_settings) -> None:
    client, upstream = make_client(make_settings)

    response = client.post("/relay/image", json={"prompt": "   "})

    assert response.status_code == 400
    assert response.json()["error"] == "Prompt is required"
    assert upstream.requests == []


def test_image_loading_returns_estimated_time(make_settings) -> None:
    client, _ = make_client(
        make_settings,
        lambda request: httpx.Response(
            503, json={"error": "Model is currently loading", "estimated_time": 20.4}
        ),
    )

    response = client.post("/relay/image", json={"prompt": "a red fox"})

    assert response.status_code == 503
    payload = response.json()
    assert payload["estimated_time"] == 20.4
    assert "21 seconds" in payload["error"]
    assert response.headers["retry-after"] == "21"


def test_image_provider_error_is_passed_through(make_settings) -> None:
    client, _ = make_client(
        make_settings, lambda request: httpx.Response(400, text="bad prompt")
    )

    response = client.post("/relay/image", json={"prompt": "a red fox"})

    assert response.status_code == 400
    assert response.json()["error"] == "Image provider error: 400 Bad Request. bad prompt"


def test_remove_background_forwards_decoded_bytes(make_settings) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/models/rmbg"
        assert request.content == b"raw-image"
        assert request.headers["content-type"] == "image/jpeg"
        return httpx.Response(200, content=b"cutout", headers={"content-type": "image/png"})

    client, _ = make_client(make_settings, handler)

    response = client.post(
        "/relay/image/remove-background",
        json={"image": "data:image/jpeg;base64,cmF3LWltYWdl"},
    )

    assert response.status_code == 200
    assert response.content == b"cutout"


def test_remove_background_rejects_bad_base64(make_settings) -> None:
    client, upstream = make_client(make_settings)

    response = client.post(
        "/relay/image/remove-background", json={"image": "data:image/png;base64,@@@"}
    )

    assert response.status_code == 400
    assert upstream.requests == []
