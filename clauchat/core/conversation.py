"""
Conversation data model.

Messages, the ordered conversation log, running usage totals, and the
ephemeral session that accumulates an in-flight reply.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Dict, Iterator, List, Optional, Tuple


class Role(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A committed message. Never modified after it is appended."""
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        """Wire representation used in chat requests."""
        return {"role": self.role.value, "content": self.content}


@dataclass(frozen=True)
class UsageTotals:
    """Running token and cost totals.

    Derived values, recomputed by the engine after every event. Input tokens
    include ``pending_tokens``; ``estimated_cost`` is None when the model has
    no pricing entry.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost: Optional[Decimal] = Decimal("0")
    pending_tokens: int = 0

    def __post_init__(self):
        """Validate totals are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens must be >= 0")
        if self.output_tokens < 0:
            raise ValueError("output_tokens must be >= 0")
        if self.pending_tokens < 0:
            raise ValueError("pending_tokens must be >= 0")
        if self.estimated_cost is not None and self.estimated_cost < 0:
            raise ValueError("estimated_cost must be >= 0")

    @property
    def cost_available(self) -> bool:
        return self.estimated_cost is not None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class Conversation:
    """Insertion-ordered message log.

    Only the engine appends to it. An assistant reply must answer a user
    message; consecutive user messages are allowed so that a turn whose
    reply failed stays in context for the next submission.
    """

    def __init__(self, messages: Optional[List[Message]] = None):
        self._messages: List[Message] = []
        for message in messages or []:
            self._append(message)

    def append_user(self, content: str) -> Message:
        return self._append(Message(role=Role.USER, content=content))

    def append_assistant(self, content: str) -> Message:
        return self._append(Message(role=Role.ASSISTANT, content=content))

    def _append(self, message: Message) -> Message:
        if message.role is Role.ASSISTANT and self.last_role is not Role.USER:
            raise ValueError("An assistant reply must follow a user message")
        self._messages.append(message)
        return message

    @property
    def messages(self) -> Tuple[Message, ...]:
        """Read-only snapshot of the log."""
        return tuple(self._messages)

    @property
    def last_role(self) -> Optional[Role]:
        if not self._messages:
            return None
        return self._messages[-1].role

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)


@dataclass
class StreamSession:
    """State of the single in-flight request.

    Holds the partially accumulated reply. Destroyed on settle, cancel or
    error; the text reaches the conversation only through ``commit``.
    """
    session_id: int
    conversation: Conversation
    request: Tuple[Message, ...]
    input_tokens: int
    output_tokens: int = 0
    cancelled: bool = False
    _fragments: List[str] = field(default_factory=list)

    def append(self, fragment: str, tokens: int) -> None:
        """Append a fragment in arrival order with its incremental token count."""
        self._fragments.append(fragment)
        self.output_tokens += tokens

    @property
    def text(self) -> str:
        return "".join(self._fragments)

    def commit(self) -> Message:
        """Append the finished reply to the owning conversation."""
        if self.cancelled:
            raise ValueError(f"Session {self.session_id} was cancelled")
        return self.conversation.append_assistant(self.text)

    def discard(self) -> None:
        self.cancelled = True
        self._fragments.clear()
        self.output_tokens = 0
