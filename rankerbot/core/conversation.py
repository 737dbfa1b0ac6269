"""
Per-chat input state.

Each chat is either idle or awaiting one specific kind of text input.
The bot's single message handler consumes the state before routing.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class InputKind(str, Enum):
    """Kind of text input a chat can be waiting for."""
    SETTING = "setting"
    WITHDRAW_ADDRESS = "withdraw_address"


@dataclass(frozen=True)
class AwaitingInput:
    """Chat is waiting for one text message of the given kind."""
    kind: InputKind
    context: Dict[str, Any] = field(default_factory=dict)


class ConversationTracker:
    """
    Idle -> AwaitingInput(kind) -> Idle, keyed by chat id.

    Absence of an entry means Idle. A new expectation replaces the old one.
    """

    def __init__(self):
        self._states: Dict[int, AwaitingInput] = {}

    def expect(self, chat_id: int, kind: InputKind, **context: Any) -> AwaitingInput:
        """Move a chat to AwaitingInput."""
        state = AwaitingInput(kind=kind, context=context)
        previous = self._states.get(chat_id)
        if previous is not None and previous.kind != kind:
            logger.debug(f"Chat {chat_id}: {previous.kind.value} replaced by {kind.value}")
        self._states[chat_id] = state
        return state

    def current(self, chat_id: int) -> Optional[AwaitingInput]:
        return self._states.get(chat_id)

    def consume(self, chat_id: int) -> Optional[AwaitingInput]:
        """Return the awaited input (if any) and go back to Idle."""
        return self._states.pop(chat_id, None)

    def cancel(self, chat_id: int) -> bool:
        return self._states.pop(chat_id, None) is not None

    def is_idle(self, chat_id: int) -> bool:
        return chat_id not in self._states
