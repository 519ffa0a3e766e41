from __future__ import annotations

import json

import pytest

from relaychat.errors import (
    ClientInputError,
    ConfigurationError,
    NetworkError,
    UpstreamError,
)
from relaychat.relay.service import RelayService, decode_image_payload
from relaychat.schemas.chat import RelayRequest


class FakeUpstream:
    def __init__(self, chunks: list[bytes], error: Exception | None = None) -> None:
        self._chunks = chunks
        self._error = error
        self.closed = False

    async def aiter_bytes(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def aclose(self) -> None:
        self.closed = True


BODY = [
    b'data: {"choices":[{"delta":{"content":"one"}}]}\n\n',
    b'data: {"choices":[{"delta":{"content":"two"}}]}\n\n',
    b"data: [DONE]\n\n",
]


@pytest.mark.asyncio
async def test_forward_reencodes_content_and_closes_upstream(make_settings) -> None:
    service = RelayService(make_settings())
    upstream = FakeUpstream(BODY)

    events = [event["data"] async for event in service.forward(upstream)]

    assert [json.loads(e)["choices"][0]["delta"]["content"] for e in events[:-1]] == [
        "one",
        "two",
    ]
    assert events[-1] == "[DONE]"
    assert upstream.closed


@pytest.mark.asyncio
async def test_forward_adds_terminal_when_upstream_ends_without_one(make_settings) -> None:
    service = RelayService(make_settings())

    events = [event["data"] async for event in service.forward(FakeUpstream(BODY[:1]))]

    assert events[-1] == "[DONE]"
    assert len(events) == 2


@pytest.mark.asyncio
async def test_forward_reports_unexpected_failure_before_terminal(make_settings) -> None:
    service = RelayService(make_settings())
    upstream = FakeUpstream(BODY[:1], error=RuntimeError("decoder exploded"))

    events = [event["data"] async for event in service.forward(upstream)]

    assert json.loads(events[1]) == {
        "error": "Relay stream failed: decoder exploded",
        "kind": "upstream",
        "status": 500,
    }
    assert events[2] == "[DONE]"
    assert upstream.closed


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (
            NetworkError("Stream interrupted: peer closed connection"),
            {"error": "Stream interrupted: peer closed connection", "kind": "network"},
        ),
        (
            UpstreamError(429, "Rate limit reached"),
            {"error": "Rate limit reached", "kind": "upstream", "status": 429},
        ),
    ],
)
async def test_forward_error_event_names_failure_class(
    make_settings, error: Exception, expected: dict
) -> None:
    service = RelayService(make_settings())
    upstream = FakeUpstream(BODY[:1], error=error)

    events = [event["data"] async for event in service.forward(upstream)]

    assert json.loads(events[1]) == expected
    assert events[2] == "[DONE]"


@pytest.mark.asyncio
async def test_caller_going_away_closes_upstream(make_settings) -> None:
    service = RelayService(make_settings())
    upstream = FakeUpstream(BODY)
    events = service.forward(upstream)

    await events.__anext__()
    await events.aclose()

    assert upstream.closed


@pytest.mark.asyncio
async def test_missing_credential_is_configuration_error(make_settings) -> None:
    service = RelayService(make_settings())
    request = RelayRequest.model_validate(
        {"messages": [{"role": "user", "content": "Hi"}], "provider": "openai"}
    )

    with pytest.raises(ConfigurationError) as excinfo:
        await service.open_chat_stream(request)

    assert "OPENAI_API_KEY" in excinfo.value.message


def test_configured_providers(make_settings) -> None:
    service = RelayService(make_settings())

    assert service.configured_providers() == {"groq": True, "openai": False}


@pytest.mark.parametrize(
    ("image", "expected"),
    [
        ("data:image/jpeg;base64,aGVsbG8=", (b"hello", "image/jpeg")),
        ("aGVsbG8=", (b"hello", "application/octet-stream")),
    ],
)
def test_decode_image_payload(image: str, expected: tuple[bytes, str]) -> None:
    assert decode_image_payload(image) == expected


@pytest.mark.parametrize("image", ["data:image/png,plain", "data:image/png;base64,", "%%%"])
def test_decode_image_payload_rejects_bad_input(image: str) -> None:
    with pytest.raises(ClientInputError):
        decode_image_payload(image)
