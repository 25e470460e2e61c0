"""
Worker Registry

Maps user ids to their AgentWorker. Workers are created lazily and the
get-or-create step is atomic, so a user never has two workers.
"""

import asyncio
import logging
import threading
from typing import Any, Callable, Dict, Optional

from ..common.errors import ErrorKind
from ..common.schemas import Event
from .services import AgentServices
from .state import AgentReply
from .worker import AgentWorker

logger = logging.getLogger("advisor.agent.registry")


class WorkerRegistry:
    """One AgentWorker per user."""

    def __init__(
        self,
        services: AgentServices,
        worker_factory: Optional[Callable[[str, AgentServices], AgentWorker]] = None,
    ):
        self._services = services
        self._factory = worker_factory or AgentWorker
        self._workers: Dict[str, AgentWorker] = {}
        self._lock = threading.Lock()

    @property
    def services(self) -> AgentServices:
        return self._services

    def get_or_create(self, user_id: str) -> AgentWorker:
        """Return the user's running worker, starting one if needed."""
        if not user_id:
            raise ValueError("user_id is required")

        with self._lock:
            worker = self._workers.get(user_id)
            if worker is None or not worker.is_running:
                worker = self._factory(user_id, self._services)
                worker.start()
                self._workers[user_id] = worker
            return worker

    def get(self, user_id: str) -> Optional[AgentWorker]:
        with self._lock:
            return self._workers.get(user_id)

    async def process_message(self, user_id: str, text: str) -> AgentReply:
        if not user_id:
            return AgentReply(text="A user id is required.", error=ErrorKind.INVALID_ARGUMENTS)
        return await self.get_or_create(user_id).process_message(text)

    def handle_event(self, user_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> Event:
        """Queue an event for the user's worker and return it without waiting."""
        event = Event(type=event_type, data=data or {})
        self.get_or_create(user_id).handle_event(event)
        return event

    def get_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        worker = self.get(user_id)
        if worker is None or not worker.is_running:
            return None
        return worker.get_status()

    async def stop(self, user_id: str) -> bool:
        with self._lock:
            worker = self._workers.pop(user_id, None)
        if worker is None:
            return False
        await worker.stop()
        return True

    async def stop_all(self) -> None:
        with self._lock:
            workers = list(self._workers.values())
            self._workers.clear()
        await asyncio.gather(*(w.stop() for w in workers))

    def __len__(self) -> int:
        with self._lock:
            return len(self._workers)

    def __contains__(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._workers
