"""
Action Providers

Abstract interfaces for the delegated email, calendar and CRM integrations.
Every call is keyed by user id and either returns a result dict or raises
NotConnectedError / UpstreamError.

The Disconnected* implementations are what a user gets before connecting an
account: every call raises NotConnectedError.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..common.errors import NotConnectedError, UpstreamError


class EmailProvider(ABC):
    """Outbound email (Gmail)"""

    name = "gmail"

    @abstractmethod
    async def send_email(self, user_id: str, to: str, subject: str, body: str) -> Dict[str, Any]:
        pass


class CalendarProvider(ABC):
    """Calendar read/write and free-slot lookup"""

    name = "calendar"

    @abstractmethod
    async def list_events(self, user_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_event(self, user_id: str, event: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def find_free_time(
        self,
        user_id: str,
        duration_minutes: int = 60,
        days_ahead: int = 7,
    ) -> List[Dict[str, Any]]:
        """Free slots as ``{"start": iso, "end": iso}`` dicts, earliest first."""

    async def schedule_meeting(
        self,
        user_id: str,
        attendee_email: str,
        subject: str,
        duration_minutes: int = 60,
        preferred_times: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """
        Book a meeting in the first free slot.

        Providers that can honour ``preferred_times`` should override this;
        the default takes the earliest free slot.
        """
        slots = await self.find_free_time(user_id, duration_minutes)
        if not slots:
            raise UpstreamError(f"No free {duration_minutes}-minute slot available")

        slot = slots[0]
        event = {
            "summary": subject,
            "start": slot["start"],
            "end": slot.get("end") or _add_minutes(slot["start"], duration_minutes),
            "attendees": [attendee_email],
            "preferred_times": preferred_times or [],
        }
        return await self.create_event(user_id, event)


class CrmProvider(ABC):
    """CRM contacts and notes (HubSpot)"""

    name = "hubspot"

    @abstractmethod
    async def create_contact(self, user_id: str, contact: Dict[str, Any]) -> Dict[str, Any]:
        """Create a contact. Raises UpstreamError with status 409 if it exists."""

    @abstractmethod
    async def search_contacts(self, user_id: str, query: str) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def create_note(self, user_id: str, contact_id: str, content: str) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update_contact(self, user_id: str, contact_id: str, properties: Dict[str, Any]) -> Dict[str, Any]:
        pass


def _add_minutes(iso_start: str, minutes: int) -> str:
    return (datetime.fromisoformat(iso_start) + timedelta(minutes=minutes)).isoformat()


class DisconnectedEmail(EmailProvider):
    async def send_email(self, user_id, to, subject, body):
        raise NotConnectedError(self.name)


class DisconnectedCalendar(CalendarProvider):
    async def list_events(self, user_id, start, end):
        raise NotConnectedError(self.name)

    async def create_event(self, user_id, event):
        raise NotConnectedError(self.name)

    async def find_free_time(self, user_id, duration_minutes=60, days_ahead=7):
        raise NotConnectedError(self.name)


class DisconnectedCrm(CrmProvider):
    async def create_contact(self, user_id, contact):
        raise NotConnectedError(self.name)

    async def search_contacts(self, user_id, query):
        raise NotConnectedError(self.name)

    async def create_note(self, user_id, contact_id, content):
        raise NotConnectedError(self.name)

    async def update_contact(self, user_id, contact_id, properties):
        raise NotConnectedError(self.name)


@dataclass
class Integrations:
    """The action providers available to one deployment"""
    email: EmailProvider = field(default_factory=DisconnectedEmail)
    calendar: CalendarProvider = field(default_factory=DisconnectedCalendar)
    crm: CrmProvider = field(default_factory=DisconnectedCrm)
