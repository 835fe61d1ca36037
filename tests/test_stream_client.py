"""
Unit tests for the streaming transport.

Tests chunk parsing, request shape, resource release and error translation
against a mocked OpenAI client.
"""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import httpx
import openai
import pytest

from clauchat.config.loader import ClientConfig
from clauchat.core.conversation import Message, Role
from clauchat.core.errors import (
    AuthError,
    NetworkError,
    ProtocolError,
    RateLimited,
    ServerError,
    TransportError,
)
from clauchat.sdk.stream_client import Fragment, OpenAIStreamTransport, parse_chunk, translate_error

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/chat/completions")


def _chunk(content=None, finish_reason=None):
    return SimpleNamespace(choices=[
        SimpleNamespace(delta=SimpleNamespace(content=content), finish_reason=finish_reason)
    ])


def _status_error(cls, status, body=None, headers=None):
    response = httpx.Response(status, headers=headers or {}, request=REQUEST)
    return cls("request failed", response=response, body=body)


class FakeStream:
    """Async iterator standing in for the SDK's chunk stream."""

    def __init__(self, chunks, error=None, stall=False):
        self._chunks = list(chunks)
        self.error = error
        self.stall = stall
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.stall:
            await asyncio.sleep(10)
        if self._chunks:
            return self._chunks.pop(0)
        if self.error is not None:
            raise self.error
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


async def _collect(transport, messages, api_key="test-key", model="test-model"):
    return [fragment async for fragment in transport.open(messages, api_key, model)]


class TestParseChunk:
    """Test chunk to fragment conversion."""

    def test_content_delta(self):
        assert parse_chunk(_chunk("Hel")) == Fragment("Hel")

    def test_finish_reason_marks_final(self):
        fragment = parse_chunk(_chunk(None, "stop"))
        assert fragment == Fragment("", is_final=True, stop_reason="stop")

    def test_final_chunk_keeps_its_text(self):
        fragment = parse_chunk(_chunk("!", "length"))
        assert fragment.text == "!"
        assert fragment.is_final is True
        assert fragment.stop_reason == "length"

    def test_role_preamble_is_skipped(self):
        assert parse_chunk(_chunk(None)) is None
        assert parse_chunk(_chunk("")) is None

    def test_usage_only_chunk_is_skipped(self):
        assert parse_chunk(SimpleNamespace(choices=[])) is None

    def test_malformed_chunk_raises_protocol_error(self):
        with pytest.raises(ProtocolError, match="Malformed stream chunk"):
            parse_chunk(SimpleNamespace(data="?"))

    def test_non_text_content_raises_protocol_error(self):
        with pytest.raises(ProtocolError):
            parse_chunk(_chunk(content=42))


class TestOpenAIStreamTransport:
    """Test the SDK-backed transport."""

    def setup_method(self):
        """Set up test environment."""
        self.config = ClientConfig(api_key="test-key", model="test-model", max_tokens=256)
        self.messages = [Message(Role.USER, "Hi")]

    def _mock_client(self, mock_openai_class, stream=None, create_error=None):
        mock_client = Mock()
        if create_error is not None:
            mock_client.chat.completions.create = AsyncMock(side_effect=create_error)
        else:
            mock_client.chat.completions.create = AsyncMock(return_value=stream)
        mock_client.close = AsyncMock()
        mock_openai_class.return_value = mock_client
        return mock_client

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_yields_fragments_in_order(self, mock_openai_class):
        stream = FakeStream([_chunk(None), _chunk("Hel"), _chunk("lo!"), _chunk(None, "stop")])
        self._mock_client(mock_openai_class, stream)

        fragments = asyncio.run(_collect(OpenAIStreamTransport(self.config), self.messages))

        assert [f.text for f in fragments] == ["Hel", "lo!", ""]
        assert fragments[-1].is_final is True
        assert stream.closed is True

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_request_shape(self, mock_openai_class):
        """Full history, model, max_tokens and stream=True are sent."""
        mock_client = self._mock_client(mock_openai_class, FakeStream([_chunk(None, "stop")]))
        messages = [
            Message(Role.USER, "Hi"),
            Message(Role.ASSISTANT, "Hello!"),
            Message(Role.USER, "How are you?"),
        ]

        asyncio.run(_collect(OpenAIStreamTransport(self.config), messages, api_key="sk-1", model="m-1"))

        mock_client.chat.completions.create.assert_called_once_with(
            model="m-1",
            messages=[
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "user", "content": "How are you?"},
            ],
            max_tokens=256,
            stream=True,
        )
        _, kwargs = mock_openai_class.call_args
        assert kwargs["api_key"] == "sk-1"
        assert kwargs["base_url"] == self.config.base_url
        assert kwargs["max_retries"] == 0
        mock_client.close.assert_awaited_once()

    def test_empty_messages_rejected(self):
        with pytest.raises(ValueError, match="messages is required"):
            asyncio.run(_collect(OpenAIStreamTransport(self.config), []))

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_stream_without_stop_event(self, mock_openai_class):
        stream = FakeStream([_chunk("Cut")])
        self._mock_client(mock_openai_class, stream)

        with pytest.raises(ProtocolError, match="without a stop event"):
            asyncio.run(_collect(OpenAIStreamTransport(self.config), self.messages))
        assert stream.closed is True

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_mid_stream_network_failure(self, mock_openai_class):
        stream = FakeStream([_chunk("Half")], error=httpx.ReadError("reset", request=REQUEST))
        self._mock_client(mock_openai_class, stream)

        received = []

        async def consume():
            async for fragment in OpenAIStreamTransport(self.config).open(self.messages, "k", "m"):
                received.append(fragment)

        with pytest.raises(NetworkError):
            asyncio.run(consume())
        assert [f.text for f in received] == ["Half"]
        assert stream.closed is True

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_malformed_event_data(self, mock_openai_class):
        decode_error = json.JSONDecodeError("Expecting value", "{bad", 0)
        self._mock_client(mock_openai_class, FakeStream([], error=decode_error))

        with pytest.raises(ProtocolError, match="Malformed stream data"):
            asyncio.run(_collect(OpenAIStreamTransport(self.config), self.messages))

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_auth_failure_on_open(self, mock_openai_class):
        error = _status_error(
            openai.AuthenticationError, 401,
            body={"type": "error", "error": {"type": "authentication_error", "message": "invalid x-api-key"}},
        )
        mock_client = self._mock_client(mock_openai_class, create_error=error)

        with pytest.raises(AuthError, match="invalid x-api-key"):
            asyncio.run(_collect(OpenAIStreamTransport(self.config), self.messages))
        mock_client.close.assert_awaited_once()

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_first_byte_timeout(self, mock_openai_class):
        config = self.config.replace(first_byte_timeout=0.05)
        stream = FakeStream([], stall=True)
        self._mock_client(mock_openai_class, stream)

        with pytest.raises(NetworkError, match="Timed out"):
            asyncio.run(_collect(OpenAIStreamTransport(config), self.messages))
        assert stream.closed is True

    @patch('clauchat.sdk.stream_client.AsyncOpenAI')
    def test_closing_early_releases_stream(self, mock_openai_class):
        """A consumer that stops reading closes the network stream."""
        stream = FakeStream([_chunk("a"), _chunk("b"), _chunk("c"), _chunk(None, "stop")])
        mock_client = self._mock_client(mock_openai_class, stream)

        async def read_one():
            fragments = OpenAIStreamTransport(self.config).open(self.messages, "k", "m")
            first = await fragments.__anext__()
            await fragments.aclose()
            return first

        first = asyncio.run(read_one())

        assert first.text == "a"
        assert stream.closed is True
        mock_client.close.assert_awaited_once()


class TestTranslateError:
    """Test SDK and HTTP exceptions map onto the transport taxonomy."""

    def test_all_results_are_transport_errors(self):
        errors = [
            asyncio.TimeoutError(),
            openai.APITimeoutError(request=REQUEST),
            openai.APIConnectionError(request=REQUEST),
            _status_error(openai.AuthenticationError, 401),
            _status_error(openai.RateLimitError, 429),
            _status_error(openai.InternalServerError, 500),
            httpx.ConnectError("refused", request=REQUEST),
            ValueError("bad json"),
        ]
        for error in errors:
            assert isinstance(translate_error(error), TransportError)

    def test_timeouts_are_network_errors(self):
        assert isinstance(translate_error(asyncio.TimeoutError()), NetworkError)
        assert isinstance(translate_error(openai.APITimeoutError(request=REQUEST)), NetworkError)

    def test_connection_error(self):
        assert isinstance(translate_error(openai.APIConnectionError(request=REQUEST)), NetworkError)
        assert isinstance(translate_error(httpx.ConnectError("refused", request=REQUEST)), NetworkError)

    def test_permission_denied_is_auth_error(self):
        assert isinstance(translate_error(_status_error(openai.PermissionDeniedError, 403)), AuthError)

    def test_rate_limit_with_retry_after(self):
        error = translate_error(_status_error(openai.RateLimitError, 429, headers={"retry-after": "7"}))
        assert isinstance(error, RateLimited)
        assert error.retry_after == 7.0

    def test_rate_limit_without_retry_after(self):
        error = translate_error(_status_error(openai.RateLimitError, 429))
        assert error.retry_after is None

    def test_server_error_keeps_status(self):
        error = translate_error(_status_error(openai.InternalServerError, 529, body={"error": {"message": "Overloaded"}}))
        assert isinstance(error, ServerError)
        assert error.status == 529
        assert str(error) == "API error (529): Overloaded"

    def test_stream_error_event_is_protocol_error(self):
        error = translate_error(openai.APIError("stream error", request=REQUEST, body=None))
        assert isinstance(error, ProtocolError)
