"""In-memory agent state: status and bounded conversation memory."""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from ..common.errors import ErrorKind
from ..common.schemas import Task, utcnow


class AgentStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"


@dataclass
class Exchange:
    """One user message and the agent's reply"""
    user: str
    assistant: str
    timestamp: datetime = field(default_factory=utcnow)


class AgentMemory:
    """Keeps the last N exchanges, oldest dropped first."""

    def __init__(self, size: int = 10):
        self._exchanges: deque = deque(maxlen=size)

    def add(self, user: str, assistant: str) -> None:
        self._exchanges.append(Exchange(user=user, assistant=assistant))

    def as_messages(self) -> List[Dict[str, str]]:
        messages = []
        for ex in self._exchanges:
            messages.append({"role": "user", "content": ex.user})
            messages.append({"role": "assistant", "content": ex.assistant})
        return messages

    def __len__(self) -> int:
        return len(self._exchanges)


@dataclass
class AgentReply:
    """
    Reply to a direct user message.

    ``text`` is always set; ``error`` carries the failure kind when the
    request could not be fully served.
    """
    text: str
    error: Optional[ErrorKind] = None
    tasks: List[Task] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None
