"""
Advisor Integrations

Interfaces for the email, calendar and CRM providers the agent acts through.
"""

from .base import (
    EmailProvider,
    CalendarProvider,
    CrmProvider,
    DisconnectedEmail,
    DisconnectedCalendar,
    DisconnectedCrm,
    Integrations,
)

__all__ = [
    "EmailProvider",
    "CalendarProvider",
    "CrmProvider",
    "DisconnectedEmail",
    "DisconnectedCalendar",
    "DisconnectedCrm",
    "Integrations",
]
