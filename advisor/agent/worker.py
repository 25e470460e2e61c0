"""
Agent Worker

One long-lived worker per user. Messages, events and the periodic cycle all
go through a single asyncio mailbox drained by one consumer task, so work
for a user is strictly serialized while users never block each other.

- process_message: answered within a bounded timeout, never raises
- handle_event: returns immediately; matching runs on the consumer
- periodic cycle: executes at most one pending Task, then drains queued
  events and re-matches them against the current instructions
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from ..common.broadcaster import agent_topic
from ..common.errors import ErrorKind, classify
from ..common.schemas import Event, OngoingInstruction, RuleAction, Task, TaskStatus, TaskType, utcnow
from .services import AgentServices
from .state import AgentMemory, AgentReply, AgentStatus
from .task_queue import OutcomeKind, TaskOutcome, TaskQueue

logger = logging.getLogger("advisor.agent.worker")

EMPTY_MESSAGE_REPLY = "Please type a message and I'll help you with your clients."
TIMEOUT_REPLY = (
    "Sorry, this is taking longer than expected. I'll keep working on it in the background."
)
FAILURE_REPLY = "Sorry, something went wrong while handling your message. Please try again."
STOPPED_REPLY = "This assistant has been stopped. Please try again."


@dataclass
class _Envelope:
    kind: str  # "message" | "event" | "cycle" | "instruction"
    payload: Any = None
    future: Optional[asyncio.Future] = None


@dataclass
class CycleReport:
    """What one periodic cycle did"""
    executed: Optional[Task] = None
    outcome: Optional[TaskOutcome] = None
    events_drained: int = 0
    tasks_created: List[Task] = field(default_factory=list)


class AgentWorker:
    """Per-user agent state machine."""

    def __init__(self, user_id: str, services: AgentServices):
        self.user_id = user_id
        self._services = services
        self._config = services.agent_config
        self.status = AgentStatus.STOPPED
        self.current_task: Optional[Task] = None
        self.last_activity: datetime = utcnow()

        self._memory = AgentMemory(self._config.memory_size)
        self._instructions: List[OngoingInstruction] = []
        self._tasks = TaskQueue(services.storage)
        self._events: List[Event] = []
        self._handled: Dict[str, Set[str]] = {}  # event id -> instruction ids

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._mailbox: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None
        self._inflight: Optional[_Envelope] = None
        self._timer: Optional[asyncio.TimerHandle] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Rebuild state from storage and start the consumer. Needs a running loop."""
        if self._consumer is not None:
            return

        storage = self._services.storage
        self._loop = asyncio.get_running_loop()
        self._mailbox = asyncio.Queue()
        self._instructions = storage.list_instructions(self.user_id)

        # Work interrupted by a restart is attempted again
        for task in storage.list_tasks(self.user_id, TaskStatus.IN_PROGRESS):
            task.requeue("Interrupted by restart")
            storage.update_task(task)
        pending = storage.list_tasks(self.user_id, TaskStatus.PENDING)
        for task in sorted(pending, key=lambda t: t.created_at):
            self._tasks.enqueue(task)

        self.status = AgentStatus.ACTIVE
        self._consumer = self._loop.create_task(self._run(), name=f"agent-{self.user_id}")
        self._schedule_tick()
        logger.info(
            "Agent started for %s (%d instructions, %d pending tasks)",
            self.user_id, len(self._instructions), len(self._tasks),
        )

    async def stop(self) -> None:
        if self.status == AgentStatus.STOPPED:
            return
        self.status = AgentStatus.STOPPED

        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None

        # Release anyone still waiting on the mailbox
        waiting = [self._inflight] if self._inflight is not None else []
        while self._mailbox is not None and not self._mailbox.empty():
            waiting.append(self._mailbox.get_nowait())
        self._inflight = None
        for envelope in waiting:
            if envelope.future is not None and not envelope.future.done():
                if envelope.kind == "message":
                    envelope.future.set_result(AgentReply(text=STOPPED_REPLY, error=ErrorKind.UPSTREAM_ERROR))
                else:
                    envelope.future.cancel()
        logger.info("Agent stopped for %s", self.user_id)

    @property
    def is_running(self) -> bool:
        return self.status == AgentStatus.ACTIVE

    def _schedule_tick(self) -> None:
        interval = self._config.cycle_interval
        if interval and interval > 0 and self.is_running:
            self._timer = self._loop.call_later(interval, self._tick)

    def _tick(self) -> None:
        self._timer = None
        if not self.is_running:
            return
        self._mailbox.put_nowait(_Envelope("cycle"))
        self._schedule_tick()

    def _post(self, envelope: _Envelope) -> None:
        self._loop.call_soon_threadsafe(self._mailbox.put_nowait, envelope)

    async def _request(self, kind: str, payload: Any = None):
        if not self.is_running:
            raise RuntimeError(f"Agent for {self.user_id} is not running")
        future = self._loop.create_future()
        self._post(_Envelope(kind, payload, future))
        return await future

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def process_message(self, text: str) -> AgentReply:
        """
        Answer a direct user message.

        Never raises. On timeout the caller gets a timeout reply while the
        work itself continues on the consumer and may still update Tasks.
        """
        if not isinstance(text, str) or not text.strip():
            return AgentReply(text=EMPTY_MESSAGE_REPLY, error=ErrorKind.INVALID_ARGUMENTS)
        if not self.is_running:
            return AgentReply(text=STOPPED_REPLY, error=ErrorKind.UPSTREAM_ERROR)

        future = self._loop.create_future()
        self._post(_Envelope("message", text.strip(), future))
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=self._config.message_timeout)
        except asyncio.TimeoutError:
            logger.warning("Message for %s timed out after %ss", self.user_id, self._config.message_timeout)
            return AgentReply(text=TIMEOUT_REPLY, error=ErrorKind.TIMEOUT)

    def handle_event(self, event: Event) -> None:
        """Queue an external event. Returns immediately."""
        if not self.is_running:
            logger.warning("Dropping %s event for stopped agent %s", event.type, self.user_id)
            return
        self._post(_Envelope("event", event))

    async def run_cycle(self) -> CycleReport:
        """Run one periodic cycle now and wait for its report."""
        return await self._request("cycle")

    async def add_instruction(
        self,
        text: str,
        trigger_events: Optional[List[str]] = None,
        priority: int = 1,
    ) -> OngoingInstruction:
        """Store a standing instruction directly, bypassing keyword detection."""
        return await self._request("instruction", (text, trigger_events, priority))

    def get_status(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "status": self.status.value,
            "current_task": self.current_task.id if self.current_task else None,
            "pending_tasks": len(self._tasks),
            "queued_events": len(self._events),
            "instructions": len(self._instructions),
            "memory": len(self._memory),
            "last_activity": self.last_activity.isoformat(),
        }

    # ------------------------------------------------------------------
    # Consumer
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            envelope = await self._mailbox.get()
            self._inflight = envelope
            try:
                result = await self._process(envelope)
            except Exception as e:
                logger.error("Agent %s failed handling %s: %s", self.user_id, envelope.kind, e, exc_info=True)
                if envelope.future is not None and not envelope.future.done():
                    envelope.future.set_exception(e)
            else:
                if envelope.future is not None and not envelope.future.done():
                    envelope.future.set_result(result)
            # Left set on cancellation so stop() can release the waiter
            self._inflight = None
            self._mailbox.task_done()

    async def _process(self, envelope: _Envelope):
        self.last_activity = utcnow()
        if envelope.kind == "message":
            return await self._handle_message(envelope.payload)
        if envelope.kind == "event":
            return self._ingest_event(envelope.payload)
        if envelope.kind == "cycle":
            return await self._run_cycle()
        if envelope.kind == "instruction":
            text, trigger_events, priority = envelope.payload
            return self._add_instruction(text, trigger_events, priority=priority)
        raise ValueError(f"Unknown envelope kind: {envelope.kind}")

    async def _handle_message(self, text: str) -> AgentReply:
        logger.info("Message for %s: %s", self.user_id, text[:50])
        services = self._services
        try:
            if services.matcher.is_instruction(text):
                instruction = await self._store_instruction(text)
                reply = AgentReply(
                    text=f"I've added that as an ongoing instruction. I'll remember to: {instruction.instruction}"
                )
            else:
                context = await services.retrieval.search(self.user_id, text)
                history = self._memory.as_messages()
                if services.matcher.wants_tools(text):
                    result = await services.dispatcher.respond_with_tools(self.user_id, text, context, history)
                else:
                    result = await services.dispatcher.respond(text, context, history)
                for task in result.tasks:
                    self._tasks.enqueue(task)
                reply = AgentReply(text=result.text, error=result.error, tasks=result.tasks)
        except Exception as e:
            kind = classify(e)
            logger.error("Message handling failed for %s (%s): %s", self.user_id, kind.value, e, exc_info=True)
            return AgentReply(text=FAILURE_REPLY, error=kind)

        self._memory.add(text, reply.text)
        return reply

    async def _store_instruction(self, text: str) -> OngoingInstruction:
        services = self._services
        triggers = services.matcher.infer_trigger_events(text)
        actions: List[RuleAction] = []
        if services.rule_detector is not None and self._config.rule_detection:
            detection = await asyncio.to_thread(services.rule_detector.detect, text)
            if detection.is_rule:
                actions = detection.actions
                triggers = detection.trigger_events or triggers
        return self._add_instruction(text, triggers, actions=actions)

    def _add_instruction(
        self,
        text: str,
        trigger_events: Optional[List[str]],
        priority: int = 1,
        actions: Optional[List[RuleAction]] = None,
    ) -> OngoingInstruction:
        instruction = OngoingInstruction(
            user_id=self.user_id,
            instruction=text,
            trigger_events=trigger_events or [],
            priority=priority,
            actions=actions or [],
        )
        self._services.storage.create_instruction(instruction)
        self._instructions.append(instruction)
        logger.info(
            "Stored instruction %s for %s (triggers: %s)",
            instruction.id, self.user_id, ", ".join(instruction.trigger_events),
        )
        return instruction

    def _ingest_event(self, event: Event) -> List[Task]:
        self._events.append(event)
        created = self._match_event(event)
        # Oldest events go first once the backlog is full
        overflow = len(self._events) - self._config.max_queued_events
        if overflow > 0:
            for dropped in self._events[:overflow]:
                self._handled.pop(dropped.id, None)
            del self._events[:overflow]
            logger.warning("Dropped %d queued events for %s", overflow, self.user_id)
        logger.info("Event %s (%s) for %s created %d tasks", event.id, event.type, self.user_id, len(created))
        return created

    def _match_event(self, event: Event) -> List[Task]:
        """Create one follow-up task per matching instruction not yet handled for this event."""
        services = self._services
        handled = self._handled.setdefault(event.id, set())
        created = []
        for instruction in services.matcher.match(self._instructions, event):
            if instruction.id in handled:
                continue
            handled.add(instruction.id)
            task = services.matcher.build_follow_up_task(instruction, event)
            services.storage.create_task(task)
            self._tasks.enqueue(task)
            created.append(task)
        return created

    async def _run_cycle(self) -> CycleReport:
        report = CycleReport()

        task = self._tasks.next()
        if task is not None:
            report.executed = task
            report.outcome = await self._execute_task(task)
            report.tasks_created.extend(report.outcome.tasks)

        drained, self._events = self._events, []
        report.events_drained = len(drained)
        if drained:
            self._instructions = self._services.storage.list_instructions(self.user_id)
            for event in drained:
                report.tasks_created.extend(self._match_event(event))
                self._handled.pop(event.id, None)
        return report

    async def _execute_task(self, task: Task) -> TaskOutcome:
        storage = self._services.storage
        try:
            task.start()
        except ValueError as e:
            logger.warning("Skipping task %s: %s", task.id, e)
            return TaskOutcome.error(str(e))
        storage.update_task(task)

        self.current_task = task
        try:
            outcome = await self._services.dispatcher.execute_task(task)
        except Exception as e:
            logger.error("Task %s raised: %s", task.id, e, exc_info=True)
            outcome = TaskOutcome.retry(str(e))
        finally:
            self.current_task = None

        self._tasks.apply_outcome(task, outcome)
        for deferred in outcome.tasks:
            self._tasks.enqueue(deferred)
        if task.task_type == TaskType.FOLLOW_UP and outcome.kind != OutcomeKind.RETRY:
            self._notify(task)
        return outcome

    def _notify(self, task: Task) -> None:
        delivered = self._services.broadcaster.publish(agent_topic(self.user_id), {
            "type": "proactive_action",
            "task_id": task.id,
            "title": task.title,
            "status": task.status.value,
            "result": task.result,
            "error": task.error,
        })
        logger.info("Proactive action %s published to %d subscribers", task.id, delivered)
