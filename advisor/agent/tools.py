"""
Agent Tools

The closed set of actions the LLM may invoke. Each tool has a pydantic
argument model (its JSON schema is what the model sees) and an async
handler. Handlers for action tools degrade to a durable Task when the
integration they need is not connected.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Tuple, Type

from pydantic import BaseModel, Field, field_validator

from ..common.errors import ErrorKind, NotConnectedError, UpstreamError
from ..common.schemas import Corpus, Task, TaskType
from ..common.storage import Storage
from ..integrations import Integrations
from ..retriever import RetrievalService

logger = logging.getLogger("advisor.agent.tools")

_EMAIL_RE = re.compile(r"[\w.+-]+@[\w-]+(\.[\w-]+)+")


def extract_email_from_address(address: str) -> str:
    """``"Sara Lee <sara@x.com>"`` -> ``"sara@x.com"``"""
    match = _EMAIL_RE.search(address or "")
    return match.group(0).lower() if match else ""


def extract_name_from_address(address: str) -> str:
    """``"Sara Lee <sara@x.com>"`` -> ``"Sara Lee"``; falls back to the mailbox name."""
    address = (address or "").strip()
    if "<" in address:
        name = address.split("<", 1)[0].strip().strip('"')
        if name:
            return name
    email = extract_email_from_address(address)
    return email.split("@", 1)[0] if email else ""


def split_name(name: str) -> Tuple[str, str]:
    parts = (name or "").split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


def _check_email(value: str) -> str:
    value = (value or "").strip()
    if not _EMAIL_RE.fullmatch(value):
        raise ValueError(f"not a valid email address: {value!r}")
    return value.lower()


# ============================================================================
# Argument models
# ============================================================================

class SearchEmailsArgs(BaseModel):
    query: str = Field(..., min_length=1, description="What to look for in the user's emails")
    sender: Optional[str] = Field(None, description="Only emails from this sender")


class SearchContactsArgs(BaseModel):
    query: str = Field(..., min_length=1, description="Name, email, company or topic")


class ScheduleMeetingArgs(BaseModel):
    client_email: str = Field(..., description="Attendee email address")
    subject: str = Field("Meeting", description="Meeting title")
    duration_minutes: int = Field(60, ge=5, le=480)
    preferred_times: List[str] = Field(default_factory=list, description="Preferred times in natural language")

    @field_validator("client_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class FindFreeTimeArgs(BaseModel):
    duration_minutes: int = Field(60, ge=5, le=480)
    days_ahead: int = Field(7, ge=1, le=60)


class SendEmailArgs(BaseModel):
    to: str = Field(..., description="Recipient email address")
    subject: str = Field(..., min_length=1)
    body: str = Field(..., min_length=1)

    @field_validator("to")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class CreateContactArgs(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: str = Field(..., description="Contact email address")
    notes: Optional[str] = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class AddContactNoteArgs(BaseModel):
    contact_email: str = Field(..., description="Email of an existing contact")
    note: str = Field(..., min_length=1)

    @field_validator("contact_email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class CreateTaskArgs(BaseModel):
    title: str = Field(..., min_length=1)
    task_type: Literal["email", "calendar", "crm", "follow_up"]
    description: Optional[str] = None
    scheduled_for: Optional[datetime] = None


# ============================================================================
# Results and context
# ============================================================================

@dataclass
class ToolContext:
    """What a tool handler may touch"""
    user_id: str
    integrations: Integrations
    storage: Storage
    retrieval: RetrievalService


@dataclass
class ToolResult:
    """Outcome of one tool call"""
    name: str
    ok: bool
    message: str
    error_kind: Optional[ErrorKind] = None
    task: Optional[Task] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failure(cls, name: str, kind: ErrorKind, message: str) -> "ToolResult":
        return cls(name=name, ok=False, message=message, error_kind=kind)


def _defer(
    ctx: ToolContext,
    name: str,
    task_type: TaskType,
    title: str,
    description: str,
    parameters: Dict[str, Any],
    provider: str,
) -> ToolResult:
    """Turn an action into a pending Task because its integration is not connected."""
    task = Task(
        user_id=ctx.user_id,
        title=title,
        description=description,
        task_type=task_type,
        parameters=parameters,
    )
    ctx.storage.create_task(task)
    logger.warning("%s not connected for %s, deferred %s as task %s", provider, ctx.user_id, name, task.id)
    return ToolResult(
        name=name,
        ok=True,
        message=(
            f"{provider} is not connected, so I created a task to {title[0].lower() + title[1:]} "
            f"(task {task.id}). It will be completed once the account is connected."
        ),
        task=task,
        data={"deferred": True},
    )


# ============================================================================
# Handlers
# ============================================================================

async def search_emails(ctx: ToolContext, args: SearchEmailsArgs) -> ToolResult:
    hits = await ctx.retrieval.search_emails(ctx.user_id, args.query, sender=args.sender)
    if not hits:
        return ToolResult("search_emails", True, f"No emails found matching '{args.query}'")
    lines = "\n".join(f"  - {h.summary}" for h in hits)
    return ToolResult("search_emails", True, f"Found {len(hits)} emails:\n{lines}", data={"count": len(hits)})


async def search_contacts(ctx: ToolContext, args: SearchContactsArgs) -> ToolResult:
    context = await ctx.retrieval.search(ctx.user_id, args.query, corpora=[Corpus.CONTACTS])
    if not context.contacts:
        return ToolResult("search_contacts", True, f"No contacts found matching '{args.query}'")
    lines = "\n".join(f"  - {h.summary}" for h in context.contacts)
    return ToolResult(
        "search_contacts", True, f"Found {len(context.contacts)} contacts:\n{lines}",
        data={"count": len(context.contacts)},
    )


async def schedule_meeting(ctx: ToolContext, args: ScheduleMeetingArgs) -> ToolResult:
    try:
        event = await ctx.integrations.calendar.schedule_meeting(
            ctx.user_id,
            args.client_email,
            args.subject,
            args.duration_minutes,
            args.preferred_times,
        )
    except NotConnectedError as e:
        return _defer(
            ctx, "schedule_meeting", TaskType.CALENDAR,
            title=f"Schedule meeting with {args.client_email}",
            description=args.subject,
            parameters=args.model_dump(),
            provider=e.provider,
        )
    when = event.get("start", "the first free slot")
    return ToolResult(
        "schedule_meeting", True,
        f"Scheduled '{args.subject}' with {args.client_email} at {when}",
        data={"event": event},
    )


async def find_free_time(ctx: ToolContext, args: FindFreeTimeArgs) -> ToolResult:
    try:
        slots = await ctx.integrations.calendar.find_free_time(
            ctx.user_id, args.duration_minutes, args.days_ahead
        )
    except NotConnectedError:
        return ToolResult.failure(
            "find_free_time", ErrorKind.NOT_CONNECTED,
            "Connect your calendar so I can look up free time.",
        )
    if not slots:
        return ToolResult("find_free_time", True, f"No free {args.duration_minutes}-minute slots in the next {args.days_ahead} days")
    lines = "\n".join(f"  - {s['start']}" for s in slots[:5])
    return ToolResult("find_free_time", True, f"Free slots:\n{lines}", data={"slots": slots})


async def send_email(ctx: ToolContext, args: SendEmailArgs) -> ToolResult:
    try:
        await ctx.integrations.email.send_email(ctx.user_id, args.to, args.subject, args.body)
    except NotConnectedError as e:
        return _defer(
            ctx, "send_email", TaskType.EMAIL,
            title=f"Send email to {args.to}",
            description=args.subject,
            parameters=args.model_dump(),
            provider=e.provider,
        )
    return ToolResult("send_email", True, f"Sent email '{args.subject}' to {args.to}")


async def create_contact(ctx: ToolContext, args: CreateContactArgs) -> ToolResult:
    firstname, lastname = split_name(args.name)
    contact = {"email": args.email, "firstname": firstname, "lastname": lastname}
    if args.notes:
        contact["notes"] = args.notes
    try:
        created = await ctx.integrations.crm.create_contact(ctx.user_id, contact)
    except NotConnectedError as e:
        return _defer(
            ctx, "create_contact", TaskType.CRM,
            title=f"Create contact {args.name}",
            description=args.email,
            parameters={"action": "create_contact", **args.model_dump()},
            provider=e.provider,
        )
    except UpstreamError as e:
        if e.status == 409:
            return ToolResult("create_contact", True, f"{args.name} <{args.email}> is already a contact")
        raise
    return ToolResult("create_contact", True, f"Created contact {args.name} <{args.email}>", data={"contact": created})


async def add_contact_note(ctx: ToolContext, args: AddContactNoteArgs) -> ToolResult:
    try:
        matches = await ctx.integrations.crm.search_contacts(ctx.user_id, args.contact_email)
        if not matches:
            return ToolResult.failure(
                "add_contact_note", ErrorKind.INVALID_ARGUMENTS,
                f"No contact found for {args.contact_email}",
            )
        await ctx.integrations.crm.create_note(ctx.user_id, str(matches[0].get("id", "")), args.note)
    except NotConnectedError as e:
        return _defer(
            ctx, "add_contact_note", TaskType.CRM,
            title=f"Add note to {args.contact_email}",
            description=args.note[:80],
            parameters={"action": "add_note", **args.model_dump()},
            provider=e.provider,
        )
    return ToolResult("add_contact_note", True, f"Added note to {args.contact_email}")


async def create_task(ctx: ToolContext, args: CreateTaskArgs) -> ToolResult:
    task = Task(
        user_id=ctx.user_id,
        title=args.title,
        description=args.description or "",
        task_type=TaskType(args.task_type),
        scheduled_for=args.scheduled_for,
    )
    ctx.storage.create_task(task)
    return ToolResult("create_task", True, f"Created task '{args.title}' (task {task.id})", task=task)


# ============================================================================
# Registry
# ============================================================================

Handler = Callable[[ToolContext, Any], Awaitable[ToolResult]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args_model: Type[BaseModel]
    handler: Handler

    @property
    def schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.args_model.model_json_schema(),
            },
        }


TOOL_HANDLERS: Dict[str, ToolSpec] = {
    spec.name: spec
    for spec in [
        ToolSpec("search_emails", "Search the user's emails by topic, optionally filtered by sender", SearchEmailsArgs, search_emails),
        ToolSpec("search_contacts", "Search the user's CRM contacts", SearchContactsArgs, search_contacts),
        ToolSpec("schedule_meeting", "Schedule a meeting with a client in the next free slot", ScheduleMeetingArgs, schedule_meeting),
        ToolSpec("find_free_time", "List free calendar slots", FindFreeTimeArgs, find_free_time),
        ToolSpec("send_email", "Send an email on the user's behalf", SendEmailArgs, send_email),
        ToolSpec("create_contact", "Create a CRM contact", CreateContactArgs, create_contact),
        ToolSpec("add_contact_note", "Add a note to an existing CRM contact", AddContactNoteArgs, add_contact_note),
        ToolSpec("create_task", "Create a task to be completed later", CreateTaskArgs, create_task),
    ]
}

TOOL_DEFINITIONS: List[Dict[str, Any]] = [spec.schema for spec in TOOL_HANDLERS.values()]
