"""
Rule Detector: LLM judgment of automation rules.

When a message already looks like a standing instruction, a small LLM call
decides whether it is an automation rule and extracts its trigger and the
ordered actions to run when it fires.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from ..common.llm_client import LLMClient
from ..common.llm_utils import parse_llm_json
from ..common.schemas import EventType, RuleAction

logger = logging.getLogger("advisor.agent.rule_detector")


RULE_POLICY = """You decide whether a financial advisor's message sets up an automation rule for their assistant.

A RULE describes something to do automatically whenever a trigger happens:
- "When someone emails me who is not in HubSpot, create a contact and note the email"
- "Whenever a new contact is created, send them a welcome email"
- "When a meeting is scheduled, email the attendees a reminder"

NOT A RULE:
- One-off requests ("schedule a meeting with Sara tomorrow")
- Questions ("who mentioned baseball?")
- Preferences without a trigger ("I like short emails")

Triggers: email_received, calendar_event_created, contact_created, note_created
Action types: send_email, create_contact, add_contact_note, schedule_meeting, create_task

Respond with JSON only:
{"is_rule": true/false, "rule_data": {"trigger": "...", "condition": "...", "actions": [{"type": "...", "description": "...", "parameters": {}}]}}"""


TRIGGER_EVENT_TYPES = {
    "email_received": EventType.GMAIL.value,
    "calendar_event_created": EventType.CALENDAR.value,
    "contact_created": EventType.CRM.value,
    "note_created": EventType.CRM.value,
}


@dataclass
class RuleDetection:
    """Result of rule detection."""
    is_rule: bool
    trigger: str = ""
    condition: str = ""
    actions: List[RuleAction] = field(default_factory=list)
    raw_response: Optional[str] = None

    @property
    def trigger_events(self) -> List[str]:
        event_type = TRIGGER_EVENT_TYPES.get(self.trigger)
        return [event_type] if event_type else []


class RuleDetector:
    """LLM-based automation-rule extraction. Never raises."""

    def __init__(self, llm: Optional[LLMClient]):
        self._llm = llm

    @property
    def is_available(self) -> bool:
        return self._llm is not None and self._llm.is_available

    def detect(self, text: str) -> RuleDetection:
        if not self.is_available:
            return RuleDetection(is_rule=False)

        try:
            raw = self._llm.generate(
                f"Message: {text[:1000]}",
                system=RULE_POLICY,
                max_tokens=400,
            )
        except Exception as e:
            logger.warning("Rule detection failed: %s", e)
            return RuleDetection(is_rule=False)

        return self._parse_response(raw)

    def _parse_response(self, raw: str) -> RuleDetection:
        data = parse_llm_json(raw)
        if not data or not data.get("is_rule"):
            return RuleDetection(is_rule=False, raw_response=raw)

        rule = data.get("rule_data") or {}
        actions = []
        for item in rule.get("actions") or []:
            if isinstance(item, dict) and item.get("type"):
                params = item.get("parameters")
                actions.append(RuleAction(
                    type=str(item["type"]),
                    description=str(item.get("description", "")),
                    parameters=params if isinstance(params, dict) else {},
                ))

        return RuleDetection(
            is_rule=True,
            trigger=str(rule.get("trigger", "")),
            condition=str(rule.get("condition", "")),
            actions=actions,
            raw_response=raw,
        )
