"""
Instruction Matcher

Recognizes standing instructions in user messages, infers which event types
they react to, and matches stored instructions against incoming events.
"""

import re
from typing import Iterable, List

from ..common.schemas import (
    ALL_EVENT_TYPES,
    Event,
    EventType,
    OngoingInstruction,
    Task,
    TaskType,
)

INSTRUCTION_KEYWORDS = ["when", "always", "remember to", "ongoing", "instruction", "rule"]

ACTION_KEYWORDS = [
    "schedule", "send email", "send an email", "create contact", "add contact",
    "send a message", "book appointment", "set up meeting", "create task",
    "remind me", "follow up", "add a note", "add note",
]

TRIGGER_KEYWORDS = {
    EventType.GMAIL.value: ["email", "emails", "message", "messages", "inbox"],
    EventType.CALENDAR.value: ["calendar", "meeting", "meetings", "appointment", "appointments", "event"],
    EventType.CRM.value: ["contact", "contacts", "hubspot", "crm"],
}


def _contains_phrase(text: str, phrase: str) -> bool:
    return re.search(rf"\b{re.escape(phrase)}\b", text) is not None


class InstructionMatcher:
    """Keyword heuristics for instructions plus trigger-event matching."""

    def is_instruction(self, text: str) -> bool:
        """True if the message reads like a standing instruction.

        Questions ("when is my meeting?") are never instructions.
        """
        lowered = (text or "").strip().lower()
        if not lowered or lowered.endswith("?"):
            return False
        return any(_contains_phrase(lowered, k) for k in INSTRUCTION_KEYWORDS)

    def wants_tools(self, text: str) -> bool:
        """True if the message asks the agent to do something."""
        lowered = (text or "").lower()
        return any(_contains_phrase(lowered, k) for k in ACTION_KEYWORDS)

    def infer_trigger_events(self, text: str) -> List[str]:
        """Event types an instruction mentions, or every type if none."""
        lowered = (text or "").lower()
        events = [
            event_type
            for event_type, words in TRIGGER_KEYWORDS.items()
            if any(_contains_phrase(lowered, w) for w in words)
        ]
        return events or list(ALL_EVENT_TYPES)

    def match(self, instructions: Iterable[OngoingInstruction], event: Event) -> List[OngoingInstruction]:
        """Active instructions triggered by this event, highest priority first."""
        matched = [i for i in instructions if i.matches(event.type)]
        return sorted(matched, key=lambda i: i.priority, reverse=True)

    def build_follow_up_task(self, instruction: OngoingInstruction, event: Event) -> Task:
        return Task(
            user_id=instruction.user_id,
            title=f"Proactive: {instruction.instruction}",
            description=f"Auto-generated task based on {event.type} event",
            task_type=TaskType.FOLLOW_UP,
            parameters={
                "event": event.model_dump(mode="json"),
                "instruction": instruction.instruction,
                "instruction_id": instruction.id,
                "actions": [a.model_dump() for a in instruction.actions],
            },
        )
