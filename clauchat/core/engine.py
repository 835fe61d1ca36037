"""
Streaming conversation engine.

Owns the conversation and usage totals, drives the transport for one reply
at a time, and emits an immutable snapshot to listeners after every
processed event.

Phases:
    IDLE -> COMPOSING -> SUBMITTING -> STREAMING -> SETTLED -> IDLE
    SUBMITTING/STREAMING -> IDLE        (cancel, partial reply discarded)
    SUBMITTING/STREAMING -> ERRORED -> IDLE   (transport failure)

All state changes happen on the event loop thread: UI entry points are
applied directly, stream fragments travel from the network task through a
queue and are applied by a single consumer task.
"""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple, Union

from ..config.loader import ClientConfig
from ..sdk.stream_client import BaseTransport, Fragment
from .conversation import Conversation, Message, Role, StreamSession, UsageTotals
from .errors import (
    ContextWindowExceeded,
    MissingCredentials,
    PreconditionError,
    ProtocolError,
    TransportError,
    UnknownModel,
)
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .token_counter import TokenUsage, count_message_tokens, count_tokens

logger = logging.getLogger(__name__)


class Phase(Enum):
    IDLE = "idle"
    COMPOSING = "composing"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    SETTLED = "settled"
    ERRORED = "errored"


@dataclass(frozen=True)
class EngineSnapshot:
    """Read-only view of engine state handed to the presentation layer.

    ``conversation`` holds committed messages only; the reply being
    streamed is exposed separately as ``partial_reply``.
    """
    conversation: Tuple[Message, ...]
    usage: UsageTotals
    phase: Phase
    error_detail: Optional[str] = None
    draft: str = ""
    partial_reply: Optional[str] = None


@dataclass(frozen=True)
class FragmentReceived:
    session_id: int
    fragment: Fragment


@dataclass(frozen=True)
class StreamFailed:
    session_id: int
    error: TransportError


StreamEvent = Union[FragmentReceived, StreamFailed]
SnapshotListener = Callable[[EngineSnapshot], None]


class ConversationEngine:
    """Single-conversation chat engine.

    Entry points (``on_draft_changed``, ``on_submit``, ``on_cancel``) must be
    called from the thread running the event loop; ``on_submit`` needs a
    running loop to start the stream.
    """

    def __init__(
        self,
        config: ClientConfig,
        transport: BaseTransport,
        pricing: PricingTable = PRICING_TABLE,
        encoding: Any = None,
        on_snapshot: Optional[SnapshotListener] = None,
    ):
        self.config = config
        self._transport = transport
        self._pricing = pricing
        self._encoding = encoding

        self._conversation = Conversation()
        self._phase = Phase.IDLE
        self._draft = ""
        self._draft_tokens = 0
        self._error_detail: Optional[str] = None

        # Settled turns only
        self._committed_input = 0
        self._committed_output = 0

        self._session: Optional[StreamSession] = None
        self._session_counter = 0
        self._stream_task: Optional[asyncio.Task] = None
        self._events: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._idle = asyncio.Event()
        self._idle.set()

        self._listeners: List[SnapshotListener] = []
        if on_snapshot is not None:
            self._listeners.append(on_snapshot)

        self._cost_unavailable_logged = False
        self._usage = self._compute_usage()

    # -- read side -----------------------------------------------------

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def usage(self) -> UsageTotals:
        return self._usage

    @property
    def conversation(self) -> Tuple[Message, ...]:
        return self._conversation.messages

    @property
    def is_streaming(self) -> bool:
        return self._session is not None

    def snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            conversation=self._conversation.messages,
            usage=self._usage,
            phase=self._phase,
            error_detail=self._error_detail,
            draft=self._draft,
            partial_reply=self._session.text if self._session is not None else None,
        )

    def subscribe(self, listener: SnapshotListener) -> Callable[[], None]:
        """Register a snapshot listener. Returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_idle(self) -> None:
        """Wait until no stream is in flight."""
        await self._idle.wait()

    # -- UI entry points -----------------------------------------------

    def on_draft_changed(self, text: str) -> None:
        """Recompute the pending input preview for the unsent draft."""
        self._draft = text
        self._draft_tokens = count_tokens(text, self._encoding)
        self._error_detail = None
        if self._session is None:
            self._set_phase(Phase.COMPOSING if text else Phase.IDLE)
        self._refresh()

    def on_submit(self) -> bool:
        """Commit the draft as a user message and start streaming a reply.

        Returns:
            True if a request was started. Submissions while a stream is in
            flight and blank drafts are ignored; precondition failures are
            reported through ``error_detail``.
        """
        if self._session is not None:
            logger.debug("Submit ignored: a reply is already streaming")
            return False
        if not self._draft.strip():
            return False

        try:
            request, input_tokens = self._prepare_request(self._draft)
        except PreconditionError as e:
            logger.warning(f"Submit refused: {e}")
            self._error_detail = str(e)
            self._refresh()
            return False

        loop = asyncio.get_running_loop()
        self._ensure_consumer(loop)

        self._conversation.append_user(self._draft)
        self._draft = ""
        self._draft_tokens = 0
        self._error_detail = None

        self._session_counter += 1
        session = StreamSession(
            session_id=self._session_counter,
            conversation=self._conversation,
            request=request,
            input_tokens=input_tokens,
        )
        self._session = session
        self._idle.clear()
        logger.info(
            f"Submitting turn {session.session_id}: model={self.config.model}, "
            f"messages={len(request)}, input_tokens={input_tokens}"
        )
        self._set_phase(Phase.SUBMITTING)
        self._refresh()

        self._stream_task = loop.create_task(self._stream(session, self._events))
        return True

    def on_cancel(self) -> bool:
        """Abort the active stream and discard its partial reply.

        Returns:
            True if a stream was cancelled
        """
        session = self._session
        if session is None:
            return False

        logger.info(f"Cancelling turn {session.session_id}")
        session.discard()
        self._session = None
        if self._stream_task is not None:
            self._stream_task.cancel()
            self._stream_task = None
        self._set_phase(Phase.COMPOSING if self._draft else Phase.IDLE)
        self._refresh()
        self._idle.set()
        return True

    async def aclose(self) -> None:
        """Cancel any active stream and stop the event consumer."""
        stream_task = self._stream_task
        self.on_cancel()
        tasks = [t for t in (stream_task, self._consumer) if t is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer = None

    # -- request preparation -------------------------------------------

    def _prepare_request(self, draft: str) -> Tuple[Tuple[Message, ...], int]:
        """Validate preconditions and build the request history.

        Raises:
            MissingCredentials: If no API key is configured
            ContextWindowExceeded: If the request is over the model's prompt limit
        """
        if not self.config.has_credentials:
            raise MissingCredentials()

        request = self._conversation.messages + (Message(role=Role.USER, content=draft),)
        input_tokens = count_message_tokens((m.content for m in request), self._encoding)

        if self.config.model in self._pricing:
            limit = self._pricing.get_pricing(self.config.model).max_prompt_tokens
            if limit is not None and input_tokens > limit:
                raise ContextWindowExceeded(input_tokens, limit)

        return request, input_tokens

    # -- stream side ---------------------------------------------------

    def _ensure_consumer(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._consumer is None or self._consumer.done():
            self._events = asyncio.Queue()
            self._consumer = loop.create_task(self._process_events(self._events))

    async def _stream(self, session: StreamSession, events: asyncio.Queue) -> None:
        """Network task: forwards fragments to the event channel in order."""
        try:
            fragments = self._transport.open(session.request, self.config.api_key, self.config.model)
            async with aclosing(fragments):
                async for fragment in fragments:
                    events.put_nowait(FragmentReceived(session.session_id, fragment))
                    if fragment.is_final:
                        return
            raise ProtocolError("Stream ended without a stop event")
        except TransportError as e:
            events.put_nowait(StreamFailed(session.session_id, e))
        except Exception as e:
            logger.exception(f"Unexpected failure in turn {session.session_id}")
            events.put_nowait(StreamFailed(session.session_id, TransportError(f"Unexpected error: {e}")))

    async def _process_events(self, events: asyncio.Queue) -> None:
        while True:
            event = await events.get()
            self._apply(event)

    def _apply(self, event: StreamEvent) -> None:
        session = self._session
        if session is None or event.session_id != session.session_id:
            # Late event from a cancelled session
            logger.debug(f"Dropping stale event for turn {event.session_id}")
            return

        if isinstance(event, StreamFailed):
            self._fail(session, event.error)
            return

        fragment = event.fragment
        if self._phase is Phase.SUBMITTING:
            self._set_phase(Phase.STREAMING)
        if fragment.text:
            # Incremental estimate from the fragment alone
            session.append(fragment.text, count_tokens(fragment.text, self._encoding))

        if fragment.is_final:
            self._settle(session)
        else:
            self._refresh()

    def _settle(self, session: StreamSession) -> None:
        message = session.commit()
        # Reconcile fragment-boundary effects with one pass over the full reply
        output_tokens = count_tokens(message.content, self._encoding)
        self._committed_input += session.input_tokens
        self._committed_output += output_tokens
        self._session = None
        self._stream_task = None
        logger.info(
            f"Turn {session.session_id} settled: output_tokens={output_tokens} "
            f"(live estimate {session.output_tokens})"
        )

        self._set_phase(Phase.SETTLED)
        self._refresh()
        self._set_phase(Phase.COMPOSING if self._draft else Phase.IDLE)
        self._refresh()
        self._idle.set()

    def _fail(self, session: StreamSession, error: TransportError) -> None:
        logger.warning(f"Turn {session.session_id} failed: {type(error).__name__}: {error}")
        session.discard()
        self._session = None
        self._stream_task = None
        self._error_detail = str(error)

        self._set_phase(Phase.ERRORED)
        self._refresh()
        self._set_phase(Phase.COMPOSING if self._draft else Phase.IDLE)
        self._refresh()
        self._idle.set()

    # -- totals --------------------------------------------------------

    def _set_phase(self, phase: Phase) -> None:
        if phase is not self._phase:
            logger.debug(f"Phase {self._phase.value} -> {phase.value}")
            self._phase = phase

    def _compute_usage(self) -> UsageTotals:
        input_tokens = self._committed_input + self._draft_tokens
        output_tokens = self._committed_output
        if self._session is not None:
            input_tokens += self._session.input_tokens
            output_tokens += self._session.output_tokens

        return UsageTotals(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=self._cost(TokenUsage(input_tokens, output_tokens)),
            pending_tokens=self._draft_tokens,
        )

    def _cost(self, usage: TokenUsage) -> Optional[Decimal]:
        try:
            return calculate_cost(self.config.model, usage, self._pricing)
        except UnknownModel as e:
            if not self._cost_unavailable_logged:
                logger.warning(f"Cost unavailable: {e}")
                self._cost_unavailable_logged = True
            return None

    def _refresh(self) -> None:
        """Recompute totals and emit a snapshot."""
        self._usage = self._compute_usage()
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception(f"Snapshot listener {listener!r} failed")
