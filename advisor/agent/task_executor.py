"""
Task Executor

Runs a pending Task against the action providers and turns the result into
a TaskOutcome:

- not connected    -> error (the user must connect the account first)
- provider failure -> retry
- bad parameters   -> error

Follow-up tasks created by standing instructions either run the rule's
explicit actions, or pick a reaction from the event type and the wording
of the instruction.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ..common.errors import ErrorKind, InvalidArgumentsError, NotConnectedError, UpstreamError, classify
from ..common.llm_client import LLMClient
from ..common.llm_utils import strip_think_tags
from ..common.schemas import Event, RuleAction, Task, TaskType
from ..integrations import Integrations
from .task_queue import TaskOutcome
from .tools import extract_email_from_address, extract_name_from_address, split_name

logger = logging.getLogger("advisor.agent.task_executor")

# (user_id, actions, event, instruction) -> per-action results
RuleRunner = Callable[[str, List[RuleAction], Event, str], Awaitable[list]]

CONNECT_PROMPTS = {
    "gmail": "Connect your Gmail account to send emails.",
    "calendar": "Connect your Google Calendar to schedule meetings.",
    "hubspot": "Connect your HubSpot account to manage contacts.",
}

REPLY_PROMPT = """You are a financial advisor's assistant drafting a short, professional email reply.
Standing instruction from the advisor: {instruction}

Incoming email from {sender}:
Subject: {subject}
{body}

Write only the reply body."""


def _mentions(text: str, *words: str) -> bool:
    lowered = text.lower()
    return any(w in lowered for w in words)


def _require(params: Dict[str, Any], *keys: str) -> List[Any]:
    missing = [k for k in keys if not params.get(k)]
    if missing:
        raise InvalidArgumentsError(f"Task is missing parameters: {', '.join(missing)}")
    return [params[k] for k in keys]


class TaskExecutor:
    """Executes tasks by type. Never raises; every fault becomes an outcome."""

    def __init__(
        self,
        integrations: Integrations,
        llm: Optional[LLMClient] = None,
        rule_runner: Optional[RuleRunner] = None,
    ):
        self._integrations = integrations
        self._llm = llm
        self._rule_runner = rule_runner

    async def execute(self, task: Task) -> TaskOutcome:
        handlers = {
            TaskType.EMAIL: self._execute_email,
            TaskType.CALENDAR: self._execute_calendar,
            TaskType.CRM: self._execute_crm,
            TaskType.FOLLOW_UP: self._execute_follow_up,
        }
        # Tasks the user created through create_task carry no action payload
        if not task.parameters and task.task_type != TaskType.FOLLOW_UP:
            return TaskOutcome.ok(f"Reminder: {task.title}")
        try:
            result = await handlers[task.task_type](task)
            if isinstance(result, TaskOutcome):
                return result
            logger.info("Task %s completed: %s", task.id, result[:80])
            return TaskOutcome.ok(result)
        except NotConnectedError as e:
            reason = CONNECT_PROMPTS.get(e.provider, str(e))
            logger.warning("Task %s failed, %s not connected", task.id, e.provider)
            return TaskOutcome.error(reason)
        except InvalidArgumentsError as e:
            logger.warning("Task %s failed: %s", task.id, e)
            return TaskOutcome.error(str(e))
        except Exception as e:
            kind = classify(e)
            if kind in (ErrorKind.UPSTREAM_ERROR, ErrorKind.TIMEOUT):
                logger.warning("Task %s will be retried: %s", task.id, e)
                return TaskOutcome.retry(str(e) or kind.value)
            return TaskOutcome.error(str(e))

    # -- direct task types --------------------------------------------------

    async def _execute_email(self, task: Task) -> str:
        to, subject, body = _require(task.parameters, "to", "subject", "body")
        await self._integrations.email.send_email(task.user_id, to, subject, body)
        return f"Email sent to {to}"

    async def _execute_calendar(self, task: Task) -> str:
        (client_email,) = _require(task.parameters, "client_email")
        params = task.parameters
        event = await self._integrations.calendar.schedule_meeting(
            task.user_id,
            client_email,
            params.get("subject") or "Meeting",
            int(params.get("duration_minutes") or 60),
            params.get("preferred_times") or [],
        )
        return f"Meeting scheduled with {client_email} at {event.get('start', 'the first free slot')}"

    async def _execute_crm(self, task: Task) -> str:
        params = task.parameters
        action = params.get("action", "create_contact")
        crm = self._integrations.crm

        if action == "create_contact":
            (email,) = _require(params, "email")
            firstname, lastname = split_name(params.get("name", ""))
            contact = {"email": email, "firstname": firstname, "lastname": lastname}
            if params.get("notes"):
                contact["notes"] = params["notes"]
            return await self._create_contact(task.user_id, contact)

        if action == "add_note":
            email, note = _require(params, "contact_email", "note")
            matches = await crm.search_contacts(task.user_id, email)
            if not matches:
                raise InvalidArgumentsError(f"No contact found for {email}")
            await crm.create_note(task.user_id, str(matches[0].get("id", "")), note)
            return f"Note added to {email}"

        if action == "update_contact":
            contact_id, properties = _require(params, "contact_id", "properties")
            await crm.update_contact(task.user_id, contact_id, properties)
            return f"Contact {contact_id} updated"

        raise InvalidArgumentsError(f"Unknown CRM action: {action}")

    async def _create_contact(self, user_id: str, contact: Dict[str, Any]) -> str:
        try:
            await self._integrations.crm.create_contact(user_id, contact)
        except UpstreamError as e:
            if e.status == 409:
                return f"Contact {contact['email']} already exists"
            raise
        return f"Contact created for {contact['email']}"

    # -- follow-ups -----------------------------------------------------------

    async def _execute_follow_up(self, task: Task) -> Union[str, TaskOutcome]:
        params = task.parameters
        event = Event.model_validate(params.get("event") or {"type": "unknown"})
        instruction = params.get("instruction", "")
        actions = [RuleAction.model_validate(a) for a in params.get("actions") or []]

        if actions and self._rule_runner:
            return await self._run_rule(task, actions, event, instruction)

        if event.type == "gmail":
            return await self._follow_up_email(task.user_id, event, instruction)
        if event.type == "calendar":
            return await self._follow_up_calendar(task.user_id, event, instruction)
        if event.type == "crm":
            return await self._follow_up_crm(task.user_id, event, instruction)
        return f"No automatic action for {event.type} events"

    async def _run_rule(self, task: Task, actions: List[RuleAction], event: Event, instruction: str) -> TaskOutcome:
        """Steps deferred to pending tasks are handed back on the outcome whatever the verdict."""
        results = await self._rule_runner(task.user_id, actions, event, instruction)
        deferred = [r.task for r in results if r.task is not None]
        failures = [r for r in results if not r.ok]
        if any(r.error_kind == ErrorKind.UPSTREAM_ERROR for r in failures):
            reason = "; ".join(r.message for r in failures)
            logger.warning("Task %s will be retried: %s", task.id, reason)
            return TaskOutcome.retry(reason, deferred)
        if failures and len(failures) == len(results):
            reason = "; ".join(r.message for r in failures)
            logger.warning("Task %s failed: %s", task.id, reason)
            return TaskOutcome.error(reason, deferred)
        summary = "; ".join(r.message for r in results) or "Rule had no actions"
        logger.info("Task %s completed: %s", task.id, summary[:80])
        return TaskOutcome.ok(summary, deferred)

    async def _follow_up_email(self, user_id: str, event: Event, instruction: str) -> str:
        sender = event.data.get("from", "")
        sender_email = extract_email_from_address(sender)
        if not sender_email:
            raise InvalidArgumentsError("Email event has no sender address")

        if _mentions(instruction, "create", "contact", "hubspot", "crm"):
            existing = await self._integrations.crm.search_contacts(user_id, sender_email)
            if existing:
                return f"{sender_email} is already a contact"
            firstname, lastname = split_name(extract_name_from_address(sender))
            return await self._create_contact(
                user_id, {"email": sender_email, "firstname": firstname, "lastname": lastname}
            )

        if _mentions(instruction, "respond", "reply", "email"):
            subject = event.data.get("subject", "")
            body = await self._draft_reply(instruction, sender, subject, event.data.get("body", ""))
            reply_subject = subject if subject.lower().startswith("re:") else f"Re: {subject}"
            await self._integrations.email.send_email(user_id, sender_email, reply_subject, body)
            return f"Replied to {sender_email}"

        return f"Noted email from {sender_email}"

    async def _follow_up_calendar(self, user_id: str, event: Event, instruction: str) -> str:
        attendees = [
            extract_email_from_address(a if isinstance(a, str) else a.get("email", ""))
            for a in event.data.get("attendees") or []
        ]
        attendees = [a for a in attendees if a]
        summary = event.data.get("summary") or event.data.get("title") or "our meeting"

        if attendees and _mentions(instruction, "email", "attendee", "remind", "notify"):
            for email in attendees:
                await self._integrations.email.send_email(
                    user_id, email, f"Upcoming: {summary}",
                    f"Hi,\n\nThis is a reminder about {summary} at {event.data.get('start', 'the scheduled time')}.\n",
                )
            return f"Notified {len(attendees)} attendees about {summary}"

        if attendees and _mentions(instruction, "note"):
            noted = 0
            for email in attendees:
                matches = await self._integrations.crm.search_contacts(user_id, email)
                if matches:
                    await self._integrations.crm.create_note(
                        user_id, str(matches[0].get("id", "")), f"Meeting: {summary}"
                    )
                    noted += 1
            return f"Added meeting notes for {noted} contacts"

        return f"Noted calendar event {summary}"

    async def _follow_up_crm(self, user_id: str, event: Event, instruction: str) -> str:
        email = extract_email_from_address(event.data.get("email", ""))
        if email and _mentions(instruction, "thank", "welcome", "email"):
            name = event.data.get("firstname") or "there"
            await self._integrations.email.send_email(
                user_id, email, "Thank you for being a client",
                f"Hi {name},\n\nThank you for being a client. Let me know if there is anything I can help with.\n",
            )
            return f"Sent welcome email to {email}"
        return "Noted CRM update"

    async def _draft_reply(self, instruction: str, sender: str, subject: str, body: str) -> str:
        if not self._llm or not self._llm.is_available:
            return "Thank you for your email. I will get back to you shortly."
        prompt = REPLY_PROMPT.format(instruction=instruction, sender=sender, subject=subject, body=body[:2000])
        text = await asyncio.to_thread(self._llm.generate, prompt, max_tokens=400)
        return strip_think_tags(text)
