"""
Streaming chat transport.

Opens one streamed chat request and yields reply fragments as they arrive.
Every call is a single attempt; retries are left to the caller.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx
import openai
from openai import AsyncOpenAI

from ..config.loader import ClientConfig
from ..core.conversation import Message
from ..core.errors import (
    AuthError,
    NetworkError,
    ProtocolError,
    RateLimited,
    ServerError,
    TransportError,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Fragment:
    """One piece of streamed reply text.

    The final fragment of a clean stream has ``is_final`` set and carries
    the stop reason; its text may be empty.
    """
    text: str
    is_final: bool = False
    stop_reason: Optional[str] = None


class BaseTransport:
    """Interface the engine drives. Implementations must stop promptly when
    the consuming task is cancelled or the iterator is closed."""

    def open(self, messages: Sequence[Message], api_key: str, model: str) -> AsyncIterator[Fragment]:
        raise NotImplementedError


class OpenAIStreamTransport(BaseTransport):
    """Transport over the OpenAI-compatible chat completions streaming API.

    Works against any endpoint speaking that protocol; the default base URL
    is the Anthropic compatibility endpoint.
    """

    def __init__(self, config: ClientConfig):
        self.base_url = config.base_url
        self.max_tokens = config.max_tokens
        self.first_byte_timeout = config.first_byte_timeout
        self.timeout = httpx.Timeout(config.request_timeout, connect=config.connect_timeout)

    def _make_client(self, api_key: str) -> AsyncOpenAI:
        # max_retries=0: one call is one attempt
        return AsyncOpenAI(
            api_key=api_key,
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=0,
        )

    async def open(self, messages: Sequence[Message], api_key: str, model: str) -> AsyncIterator[Fragment]:
        """Stream a reply to ``messages``.

        Args:
            messages: Full request history, oldest first (required)
            api_key: Credential for the endpoint
            model: Model identifier

        Yields:
            Fragments in arrival order, ending with a final fragment

        Raises:
            ValueError: If messages is empty
            TransportError: NetworkError, AuthError, RateLimited, ServerError
                or ProtocolError; partial output must be discarded
        """
        if not messages:
            raise ValueError("messages is required and cannot be empty")

        client = self._make_client(api_key)
        stream = None
        try:
            logger.debug(f"Opening stream: model={model}, messages={len(messages)}")
            stream = await asyncio.wait_for(
                client.chat.completions.create(
                    model=model,
                    messages=[message.to_dict() for message in messages],
                    max_tokens=self.max_tokens,
                    stream=True,
                ),
                timeout=self.first_byte_timeout,
            )

            chunks = stream.__aiter__()
            first = True
            while True:
                try:
                    if first:
                        chunk = await asyncio.wait_for(chunks.__anext__(), timeout=self.first_byte_timeout)
                    else:
                        chunk = await chunks.__anext__()
                except StopAsyncIteration:
                    break
                first = False

                fragment = parse_chunk(chunk)
                if fragment is None:
                    continue
                yield fragment
                if fragment.is_final:
                    logger.debug(f"Stream finished: stop_reason={fragment.stop_reason}")
                    return

            raise ProtocolError("Stream ended without a stop event")

        except TransportError:
            raise
        except (openai.APIError, httpx.HTTPError, asyncio.TimeoutError, ValueError) as e:
            raise translate_error(e) from e
        finally:
            if stream is not None:
                await stream.close()
            await client.close()


def parse_chunk(chunk: Any) -> Optional[Fragment]:
    """Turn one streamed completion chunk into a Fragment.

    Returns None for chunks that carry no reply content (role preamble,
    usage-only chunks).

    Raises:
        ProtocolError: If the chunk does not have the expected shape
    """
    try:
        choices = chunk.choices
        if not choices:
            return None
        choice = choices[0]
        text = choice.delta.content if choice.delta is not None else None
        stop_reason = choice.finish_reason
    except (AttributeError, IndexError, TypeError) as e:
        raise ProtocolError(f"Malformed stream chunk: {e}") from e

    if text is not None and not isinstance(text, str):
        raise ProtocolError(f"Malformed stream chunk: content is {type(text).__name__}")

    if stop_reason is not None:
        return Fragment(text=text or "", is_final=True, stop_reason=stop_reason)
    if not text:
        return None
    return Fragment(text=text)


def translate_error(error: BaseException) -> TransportError:
    """Map SDK and HTTP exceptions onto the transport error taxonomy."""
    if isinstance(error, asyncio.TimeoutError):
        return NetworkError("Timed out waiting for a response")
    if isinstance(error, openai.APITimeoutError):
        return NetworkError("Request timed out")
    if isinstance(error, openai.APIConnectionError):
        return NetworkError(f"Connection failed: {error}")
    if isinstance(error, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return AuthError(f"Authentication failed: {_error_message(error)}")
    if isinstance(error, openai.RateLimitError):
        return RateLimited(f"Rate limited: {_error_message(error)}", retry_after=_retry_after(error))
    if isinstance(error, openai.APIStatusError):
        return ServerError(_error_message(error), status=error.status_code)
    if isinstance(error, openai.APIError):
        # Error event inside an otherwise healthy stream
        return ProtocolError(f"Stream reported an error: {error.message}")
    if isinstance(error, httpx.HTTPError):
        return NetworkError(f"Connection failed: {error}")
    return ProtocolError(f"Malformed stream data: {error}")


def _error_message(error: openai.APIStatusError) -> str:
    body = error.body
    if isinstance(body, dict):
        detail = body.get("error", body)
        if isinstance(detail, dict) and detail.get("message"):
            return str(detail["message"])
    return error.message


def _retry_after(error: openai.APIStatusError) -> Optional[float]:
    value = error.response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None
