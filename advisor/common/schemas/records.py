"""
Advisor Record Schemas

Durable records (tasks, standing instructions, embedded documents) and the
ephemeral event shape the agents react to.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, ClassVar, Dict, List, Optional, Tuple
from enum import Enum

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_id(prefix: str) -> str:
    """Generate a unique ID such as ``task_3f2a9c1e0b7d``"""
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


# ============================================================================
# Enums
# ============================================================================

class TaskStatus(str, Enum):
    """Task lifecycle states"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskType(str, Enum):
    """Kinds of deferred work"""
    EMAIL = "email"
    CALENDAR = "calendar"
    CRM = "crm"
    FOLLOW_UP = "follow_up"


class EventType(str, Enum):
    """External event sources"""
    GMAIL = "gmail"
    CALENDAR = "calendar"
    CRM = "crm"


ALL_EVENT_TYPES = [e.value for e in EventType]

TERMINAL_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED)


# ============================================================================
# Tasks
# ============================================================================

class Task(BaseModel):
    """
    A durable unit of deferred work.

    Transitions: pending -> in_progress -> completed | failed. A retry sends
    an in-progress task back to pending. Terminal tasks are kept as an audit
    trail.
    """
    id: str = Field(default_factory=lambda: generate_id("task"))
    user_id: str
    title: str
    description: str = ""
    status: TaskStatus = TaskStatus.PENDING
    task_type: TaskType
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = None
    error: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def _transition(self, allowed: tuple, target: TaskStatus) -> None:
        if self.status not in allowed:
            raise ValueError(
                f"Task {self.id}: cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def start(self) -> None:
        self._transition((TaskStatus.PENDING,), TaskStatus.IN_PROGRESS)
        self.attempts += 1

    def complete(self, result: str) -> None:
        self._transition((TaskStatus.IN_PROGRESS,), TaskStatus.COMPLETED)
        self.result = result
        self.error = None
        self.completed_at = utcnow()

    def fail(self, reason: str) -> None:
        self._transition((TaskStatus.IN_PROGRESS,), TaskStatus.FAILED)
        self.error = reason
        self.completed_at = utcnow()

    def requeue(self, reason: str) -> None:
        self._transition((TaskStatus.IN_PROGRESS, TaskStatus.PENDING), TaskStatus.PENDING)
        self.error = reason


# ============================================================================
# Standing instructions
# ============================================================================

class RuleAction(BaseModel):
    """One step of an automation rule, executed as a chained tool call"""
    type: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)


class OngoingInstruction(BaseModel):
    """
    A standing instruction the agent applies to incoming events.

    An empty trigger set means "every event type". Instructions are
    deactivated, never deleted.
    """
    id: str = Field(default_factory=lambda: generate_id("instr"))
    user_id: str
    instruction: str
    is_active: bool = True
    trigger_events: List[str] = Field(default_factory=list, validate_default=True)
    priority: int = Field(default=1, ge=1)
    actions: List[RuleAction] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("trigger_events", mode="before")
    @classmethod
    def normalize_triggers(cls, value):
        if not value:
            return list(ALL_EVENT_TYPES)
        seen = []
        for item in value:
            name = str(getattr(item, "value", item)).strip().lower()
            if name and name not in seen:
                seen.append(name)
        return seen or list(ALL_EVENT_TYPES)

    def matches(self, event_type: str) -> bool:
        return self.is_active and str(event_type).strip().lower() in self.trigger_events


# ============================================================================
# Events
# ============================================================================

class Event(BaseModel):
    """An external change the agent may react to. Never persisted."""
    id: str = Field(default_factory=lambda: generate_id("evt"))
    type: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return str(getattr(value, "value", value)).strip().lower()


# ============================================================================
# Embedded documents
# ============================================================================

class Corpus(str, Enum):
    """Searchable document collections"""
    EMAILS = "emails"
    CONTACTS = "contacts"
    NOTES = "notes"


class EmbeddingRecord(BaseModel):
    """Base for documents indexed for similarity search"""
    id: str = Field(default_factory=lambda: generate_id("emb"))
    user_id: str
    content: str = ""
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)

    # Fields searched by the substring fallback
    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("content",)

    def text_fields(self) -> List[str]:
        return [str(getattr(self, name) or "") for name in self.TEXT_FIELDS]

    @property
    def recency(self) -> datetime:
        return self.created_at


class EmailEmbedding(EmbeddingRecord):
    email_id: str = ""
    subject: str = ""
    sender: str = ""
    recipient: str = ""
    date: Optional[datetime] = None

    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("subject", "content", "sender")

    @property
    def recency(self) -> datetime:
        return self.date or self.created_at

    @property
    def summary(self) -> str:
        return f"From {self.sender or 'unknown'}: {self.subject or '(no subject)'}"


class ContactEmbedding(EmbeddingRecord):
    contact_id: str = ""
    firstname: str = ""
    lastname: str = ""
    email: str = ""
    company: str = ""
    phone: str = ""
    lifecycle_stage: str = ""
    lead_status: str = ""
    notes: str = ""

    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("firstname", "lastname", "email", "company", "notes", "content")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.firstname, self.lastname) if p).strip()

    @property
    def summary(self) -> str:
        name = self.full_name or self.email or self.contact_id
        return f"{name} ({self.company})" if self.company else name


class ContactNote(EmbeddingRecord):
    note_id: str = ""
    contact_id: str = ""

    TEXT_FIELDS: ClassVar[Tuple[str, ...]] = ("content",)

    @property
    def summary(self) -> str:
        preview = self.content[:80]
        return f"Note on {self.contact_id or 'contact'}: {preview}"


CORPUS_MODELS = {
    Corpus.EMAILS: EmailEmbedding,
    Corpus.CONTACTS: ContactEmbedding,
    Corpus.NOTES: ContactNote,
}
