"""
Tests for AgentWorker

End-to-end flows through one user's worker: direct messages, standing
instructions reacting to events, and the periodic task cycle.
"""

import asyncio
import json
import time

import pytest

from advisor.agent.task_queue import OutcomeKind
from advisor.common.errors import ErrorKind, UpstreamError
from advisor.common.llm_client import LLMResponse
from advisor.common.schemas import (
    Corpus,
    EmailEmbedding,
    Event,
    Task,
    TaskStatus,
    TaskType,
)
from advisor.tests.fakes import ScriptedLLM, tool_call


def _start(services, user_id="u1"):
    from advisor.agent.worker import AgentWorker
    worker = AgentWorker(user_id, services)
    worker.start()
    return worker


class SlowLLM(ScriptedLLM):
    def __init__(self, delay):
        super().__init__()
        self.delay = delay

    def chat(self, messages, tools=None, **kwargs):
        time.sleep(self.delay)
        return super().chat(messages, tools, **kwargs)


class TestMessages:
    @pytest.mark.asyncio
    async def test_grounded_answer(self, make_services, storage, embedder, llm):
        storage.add_embedding(Corpus.EMAILS, EmailEmbedding(
            user_id="u1", sender="sara@x.com", subject="Weekend",
            content="My kid has a baseball game", embedding=embedder.embed_single("kid baseball"),
        ))
        llm.queue("Sara mentioned her kid plays baseball.")
        worker = _start(make_services())

        reply = await worker.process_message("Who mentioned their kid plays baseball?")

        assert reply.ok
        assert reply.text == "Sara mentioned her kid plays baseball."
        prompt = llm.calls[0]["messages"][-1]["content"]
        assert "sara@x.com" in prompt
        assert llm.calls[0]["tools"] is None
        await worker.stop()

    @pytest.mark.asyncio
    async def test_schedule_with_disconnected_calendar_creates_task(self, make_services, storage, llm):
        llm.queue(LLMResponse(tool_calls=[
            tool_call("schedule_meeting", json.dumps({"client_email": "sara@x.com"})),
        ]))
        worker = _start(make_services())

        reply = await worker.process_message("Schedule a meeting with sara@x.com")

        assert reply.ok
        assert "calendar is not connected" in reply.text
        assert len(reply.tasks) == 1
        pending = storage.list_tasks("u1", TaskStatus.PENDING)
        assert [t.title for t in pending] == ["Schedule meeting with sara@x.com"]
        assert worker.get_status()["pending_tasks"] == 1

        # still disconnected when the cycle gets to it
        report = await worker.run_cycle()
        assert report.outcome.detail == "Connect your Google Calendar to schedule meetings."
        assert storage.get_task(pending[0].id).status == TaskStatus.FAILED
        await worker.stop()

    @pytest.mark.asyncio
    async def test_empty_message(self, make_services):
        from advisor.agent.worker import EMPTY_MESSAGE_REPLY
        worker = _start(make_services())

        for text in ("", "   ", None):
            reply = await worker.process_message(text)
            assert reply.error == ErrorKind.INVALID_ARGUMENTS
            assert reply.text == EMPTY_MESSAGE_REPLY
        await worker.stop()

    @pytest.mark.asyncio
    async def test_llm_outage_still_replies(self, make_services):
        worker = _start(make_services(llm_client=ScriptedLLM(available=False)))

        reply = await worker.process_message("Who wanted to sell AAPL?")

        assert reply.error == ErrorKind.UPSTREAM_ERROR
        assert "trouble reaching the language model" in reply.text
        await worker.stop()

    @pytest.mark.asyncio
    async def test_unexpected_failure_never_raises(self, make_services):
        from unittest.mock import AsyncMock
        from advisor.agent.worker import FAILURE_REPLY
        services = make_services()
        services.retrieval = AsyncMock()
        services.retrieval.search.side_effect = RuntimeError("boom")
        worker = _start(services)

        reply = await worker.process_message("Who wanted to sell AAPL?")

        assert reply.text == FAILURE_REPLY
        assert reply.error == ErrorKind.UPSTREAM_ERROR
        # the worker keeps serving
        assert (await worker.run_cycle()).executed is None
        await worker.stop()

    @pytest.mark.asyncio
    async def test_timeout_reply_and_work_continues(self, make_services):
        from advisor.agent.worker import TIMEOUT_REPLY
        worker = _start(make_services(llm_client=SlowLLM(0.3), message_timeout=0.05))

        reply = await worker.process_message("Who wanted to sell AAPL?")

        assert reply.error == ErrorKind.TIMEOUT
        assert reply.text == TIMEOUT_REPLY
        # the cycle queues behind the slow message, which still finishes
        await worker.run_cycle()
        assert worker.get_status()["memory"] == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_messages_are_serialized(self, make_services):
        worker = _start(make_services())

        replies = await asyncio.gather(*(worker.process_message(f"question {i}") for i in range(3)))

        assert all(r.ok for r in replies)
        assert worker.get_status()["memory"] == 3
        await worker.stop()

    @pytest.mark.asyncio
    async def test_history_is_replayed(self, make_services, llm):
        llm.queue("first answer", "second answer")
        worker = _start(make_services())

        await worker.process_message("first question")
        await worker.process_message("second question")

        messages = llm.calls[1]["messages"]
        assert messages[0] == {"role": "user", "content": "first question"}
        assert messages[1] == {"role": "assistant", "content": "first answer"}
        await worker.stop()


class TestInstructions:
    @pytest.mark.asyncio
    async def test_new_sender_becomes_contact(self, make_services, connected, storage):
        from advisor.common.broadcaster import agent_topic
        services = make_services(integrations=connected)
        queue = services.broadcaster.subscribe(agent_topic("u1"))
        worker = _start(services)

        reply = await worker.process_message("When someone emails me who is not in HubSpot, create a contact")
        assert reply.text == (
            "I've added that as an ongoing instruction. I'll remember to: "
            "When someone emails me who is not in HubSpot, create a contact"
        )
        assert storage.list_instructions("u1")[0].trigger_events == ["gmail", "crm"]

        worker.handle_event(Event(type="gmail", data={"from": "Greg Young <greg@y.com>", "subject": "Intro"}))
        report = await worker.run_cycle()

        follow_ups = [t for t in storage.list_tasks("u1") if t.task_type == TaskType.FOLLOW_UP]
        assert len(follow_ups) == 1
        assert follow_ups[0].status == TaskStatus.COMPLETED
        assert report.events_drained == 1
        assert report.tasks_created == []
        assert connected.crm.contacts[0]["email"] == "greg@y.com"

        message = queue.get_nowait()
        assert message["type"] == "proactive_action"
        assert message["task_id"] == follow_ups[0].id
        assert message["status"] == "completed"
        await worker.stop()

    @pytest.mark.asyncio
    async def test_unrelated_event_creates_nothing(self, make_services, storage):
        worker = _start(make_services())
        await worker.add_instruction("Prepare notes before meetings", trigger_events=["calendar"])

        worker.handle_event(Event(type="gmail", data={"from": "greg@y.com"}))
        report = await worker.run_cycle()

        assert report.events_drained == 1
        assert storage.list_tasks("u1") == []
        await worker.stop()

    @pytest.mark.asyncio
    async def test_every_matching_instruction_gets_a_task(self, make_services, storage):
        worker = _start(make_services())
        await worker.add_instruction("always log emails", trigger_events=["gmail"], priority=1)
        await worker.add_instruction("always answer emails", trigger_events=["gmail"], priority=3)

        worker.handle_event(Event(type="gmail", data={"from": "greg@y.com"}))
        await worker.run_cycle()

        titles = sorted(t.title for t in storage.list_tasks("u1"))
        assert titles == ["Proactive: always answer emails", "Proactive: always log emails"]
        await worker.stop()

    @pytest.mark.asyncio
    async def test_detected_rule_runs_its_actions(self, make_services, connected, llm):
        from advisor.agent.rule_detector import RuleDetector
        llm.queue(
            json.dumps({"is_rule": True, "rule_data": {
                "trigger": "email_received",
                "actions": [{"type": "create_contact", "description": "add the sender"}],
            }}),
            LLMResponse(tool_calls=[
                tool_call("create_contact", json.dumps({"name": "Greg Young", "email": "greg@y.com"})),
            ]),
        )
        services = make_services(integrations=connected, rule_detection=True)
        services.rule_detector = RuleDetector(llm)
        worker = _start(services)

        await worker.process_message("When a new person emails me, add them to HubSpot")
        stored = services.storage.list_instructions("u1")[0]
        assert stored.trigger_events == ["gmail"]
        assert [a.type for a in stored.actions] == ["create_contact"]

        worker.handle_event(Event(type="gmail", data={"from": "Greg Young <greg@y.com>"}))
        report = await worker.run_cycle()

        assert report.outcome.detail == "Created contact Greg Young <greg@y.com>"
        assert connected.crm.contacts[0]["firstname"] == "Greg"
        await worker.stop()

    @pytest.mark.asyncio
    async def test_rule_step_deferred_to_task_is_queued(self, make_services, storage, llm):
        from advisor.common.schemas import OngoingInstruction, RuleAction
        storage.create_instruction(OngoingInstruction(
            user_id="u1",
            instruction="When a meeting is booked, email Sara",
            trigger_events=["calendar"],
            actions=[RuleAction(type="send_email", description="tell Sara")],
        ))
        llm.queue(LLMResponse(tool_calls=[
            tool_call("send_email", json.dumps({"to": "sara@x.com", "subject": "Booked", "body": "See you"})),
        ]))
        worker = _start(make_services())

        worker.handle_event(Event(type="calendar", data={"summary": "Review"}))
        report = await worker.run_cycle()

        assert report.outcome.kind == OutcomeKind.OK
        assert [t.title for t in report.tasks_created] == ["Send email to sara@x.com"]
        assert worker.get_status()["pending_tasks"] == 1

        # gmail is still disconnected when the cycle reaches the deferred task
        report = await worker.run_cycle()
        assert report.executed.title == "Send email to sara@x.com"
        assert report.outcome.detail == "Connect your Gmail account to send emails."
        assert worker.get_status()["pending_tasks"] == 0
        await worker.stop()

    @pytest.mark.asyncio
    async def test_instruction_added_after_event_still_fires(self, make_services, storage):
        worker = _start(make_services())

        worker.handle_event(Event(type="gmail", data={"from": "greg@y.com"}))
        await worker.add_instruction("always log emails", trigger_events=["gmail"])
        assert worker.get_status()["pending_tasks"] == 0

        report = await worker.run_cycle()

        assert report.events_drained == 1
        assert [t.title for t in report.tasks_created] == ["Proactive: always log emails"]
        assert [t.title for t in storage.list_tasks("u1", TaskStatus.PENDING)] == ["Proactive: always log emails"]
        await worker.stop()

    @pytest.mark.asyncio
    async def test_event_backlog_is_bounded_without_cycles(self, make_services):
        worker = _start(make_services(max_queued_events=2))

        for n in range(5):
            worker.handle_event(Event(id=f"evt_{n}", type="gmail", data={"from": "greg@y.com"}))
        instruction = await worker.add_instruction("always log emails", trigger_events=["crm"])
        assert instruction.trigger_events == ["crm"]

        assert worker.get_status()["queued_events"] == 2
        assert set(worker._handled) == {"evt_3", "evt_4"}
        await worker.stop()

    @pytest.mark.asyncio
    async def test_instructions_survive_restart(self, make_services, storage):
        services = make_services()
        worker = _start(services)
        await worker.add_instruction("always log emails", trigger_events=["gmail"])
        await worker.stop()

        restarted = _start(services)
        assert restarted.get_status()["instructions"] == 1
        await restarted.stop()


class TestCycle:
    @pytest.mark.asyncio
    async def test_upstream_failure_requeues(self, make_services, connected, storage):
        connected.email.fail_with = UpstreamError("gmail 503")
        task = Task(user_id="u1", title="Send email to greg@y.com", task_type=TaskType.EMAIL,
                    parameters={"to": "greg@y.com", "subject": "Hi", "body": "Hello"})
        storage.create_task(task)
        worker = _start(make_services(integrations=connected))

        report = await worker.run_cycle()

        assert report.outcome.kind.value == "retry"
        saved = storage.get_task(task.id)
        assert saved.status == TaskStatus.PENDING
        assert saved.attempts == 1
        assert worker.get_status()["pending_tasks"] == 1

        connected.email.fail_with = None
        report = await worker.run_cycle()
        assert storage.get_task(task.id).status == TaskStatus.COMPLETED
        assert storage.get_task(task.id).attempts == 2
        await worker.stop()

    @pytest.mark.asyncio
    async def test_one_task_per_cycle(self, make_services, connected, storage):
        for i in range(2):
            storage.create_task(Task(user_id="u1", title=f"reminder {i}", task_type=TaskType.CRM))
        worker = _start(make_services(integrations=connected))

        first = await worker.run_cycle()
        assert first.executed.title in ("reminder 0", "reminder 1")
        assert worker.get_status()["pending_tasks"] == 1
        await worker.run_cycle()
        assert worker.get_status()["pending_tasks"] == 0
        assert (await worker.run_cycle()).executed is None
        await worker.stop()

    @pytest.mark.asyncio
    async def test_interrupted_task_is_retried_after_restart(self, make_services, storage):
        task = Task(user_id="u1", title="reminder", task_type=TaskType.CRM)
        task.start()
        storage.create_task(task)

        worker = _start(make_services())

        assert storage.get_task(task.id).status == TaskStatus.PENDING
        assert worker.get_status()["pending_tasks"] == 1
        await worker.stop()

    @pytest.mark.asyncio
    async def test_periodic_timer_runs_cycles(self, make_services, connected, storage):
        task = Task(user_id="u1", title="Send email to greg@y.com", task_type=TaskType.EMAIL,
                    parameters={"to": "greg@y.com", "subject": "Hi", "body": "Hello"})
        storage.create_task(task)
        worker = _start(make_services(integrations=connected, cycle_interval=0.05))

        for _ in range(40):
            if storage.get_task(task.id).status == TaskStatus.COMPLETED:
                break
            await asyncio.sleep(0.05)

        assert storage.get_task(task.id).status == TaskStatus.COMPLETED
        assert connected.email.sent[0]["to"] == "greg@y.com"
        await worker.stop()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_stopped_worker_replies_without_raising(self, make_services):
        from advisor.agent.worker import STOPPED_REPLY
        worker = _start(make_services())
        await worker.stop()

        reply = await worker.process_message("hello")

        assert reply.text == STOPPED_REPLY
        assert worker.get_status()["status"] == "stopped"
        with pytest.raises(RuntimeError):
            await worker.run_cycle()

    @pytest.mark.asyncio
    async def test_stop_releases_waiting_callers(self, make_services):
        from advisor.agent.worker import STOPPED_REPLY
        worker = _start(make_services(llm_client=SlowLLM(0.2)))

        pending = asyncio.ensure_future(worker.process_message("Who wanted to sell AAPL?"))
        await asyncio.sleep(0.05)
        await worker.stop()

        reply = await pending
        assert reply.text == STOPPED_REPLY
