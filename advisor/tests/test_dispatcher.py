"""Tests for the tool dispatcher."""

import json

import pytest

from advisor.common.errors import ErrorKind, UpstreamError
from advisor.common.llm_client import LLMResponse
from advisor.common.schemas import Event, RuleAction, TaskStatus, TaskType
from advisor.integrations import Integrations
from advisor.tests.fakes import RecordingCrm, RecordingEmail, ScriptedLLM, tool_call


@pytest.fixture
def build(storage, embedder):
    from advisor.agent.dispatcher import ToolDispatcher
    from advisor.retriever import RetrievalService

    def _build(llm, integrations=None):
        retrieval = RetrievalService(storage, embedder)
        return ToolDispatcher(llm, integrations or Integrations(), storage, retrieval)

    return _build


class TestFormatResults:
    def test_sections_in_order(self):
        from advisor.agent.dispatcher import format_results
        from advisor.agent.tools import ToolResult

        text = format_results([
            ToolResult.failure("send_email", ErrorKind.INVALID_ARGUMENTS, "bad address"),
            ToolResult("create_contact", True, "Created contact Greg"),
            ToolResult("schedule_meeting", True, "calendar is not connected...", data={"deferred": True}),
        ], preamble="Done.")

        assert text.index("Done.") < text.index("Completed:") < text.index("Created tasks:") < text.index("Errors:")
        assert "- send_email: bad address" in text

    def test_fallback_response_mentions_context(self):
        from advisor.agent.dispatcher import fallback_response
        from advisor.retriever import RetrievalContext

        assert "found no" in fallback_response(None)
        assert "Found 0 relevant" not in fallback_response(RetrievalContext(query="x"))


class TestRespond:
    @pytest.mark.asyncio
    async def test_plain_reply(self, build):
        llm = ScriptedLLM(["<think>hmm</think>Sara's kid plays baseball."])
        result = await build(llm).respond("Who mentioned baseball?")

        assert result.text == "Sara's kid plays baseball."
        assert result.error is None
        assert llm.calls[0]["tools"] is None

    @pytest.mark.asyncio
    async def test_llm_failure_uses_fallback(self, build):
        result = await build(ScriptedLLM(available=False)).respond("Who mentioned baseball?")

        assert result.error == ErrorKind.UPSTREAM_ERROR
        assert "trouble reaching the language model" in result.text

    @pytest.mark.asyncio
    async def test_context_and_history_are_sent(self, build):
        from advisor.retriever import RetrievalContext
        llm = ScriptedLLM(["ok"])
        history = [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]

        await build(llm).respond("next?", RetrievalContext(query="next?"), history)

        messages = llm.calls[0]["messages"]
        assert messages[:2] == history
        assert messages[-1]["content"].startswith("Context:\n")
        assert messages[-1]["content"].endswith("Request: next?")


class TestRespondWithTools:
    @pytest.mark.asyncio
    async def test_disconnected_calendar_becomes_task(self, build, storage):
        llm = ScriptedLLM([LLMResponse(tool_calls=[
            tool_call("schedule_meeting", json.dumps({"client_email": "sara@x.com", "subject": "Review"})),
        ])])

        result = await build(llm).respond_with_tools("u1", "Schedule a meeting with sara@x.com")

        assert result.error is None
        assert len(result.tasks) == 1
        task = storage.get_task(result.tasks[0].id)
        assert task.status == TaskStatus.PENDING
        assert task.task_type == TaskType.CALENDAR
        assert task.parameters["client_email"] == "sara@x.com"
        assert "Created tasks:" in result.text
        assert "calendar is not connected" in result.text

    @pytest.mark.asyncio
    async def test_calls_run_in_order_and_fail_independently(self, build):
        email = RecordingEmail()
        llm = ScriptedLLM([LLMResponse(tool_calls=[
            tool_call("teleport", "{}", "c1"),
            tool_call("send_email", '{"to": "greg@y.com", "subject": "Hi"', "c2"),
            tool_call("send_email", json.dumps({"to": "not-an-email", "subject": "Hi", "body": "x"}), "c3"),
            tool_call("send_email", json.dumps({"to": "greg@y.com", "subject": "Hi", "body": "Hello"}), "c4"),
        ])])

        result = await build(llm, Integrations(email=email)).respond_with_tools("u1", "send an email to greg")

        assert [r.ok for r in result.results] == [False, False, False, True]
        assert result.results[0].message == "Unknown tool: teleport"
        assert result.results[1].message.startswith("Invalid tool arguments")
        assert result.results[2].error_kind == ErrorKind.INVALID_ARGUMENTS
        assert email.sent == [{"user_id": "u1", "to": "greg@y.com", "subject": "Hi", "body": "Hello"}]
        assert "Completed:" in result.text and "Errors:" in result.text

    @pytest.mark.asyncio
    async def test_provider_failure_is_reported_inline(self, build):
        email = RecordingEmail()
        email.fail_with = UpstreamError("gmail 503")
        llm = ScriptedLLM([LLMResponse(tool_calls=[
            tool_call("send_email", json.dumps({"to": "greg@y.com", "subject": "Hi", "body": "Hello"})),
        ])])

        result = await build(llm, Integrations(email=email)).respond_with_tools("u1", "send an email")

        assert result.results[0].error_kind == ErrorKind.UPSTREAM_ERROR
        assert "- send_email: gmail 503" in result.text

    @pytest.mark.asyncio
    async def test_no_tool_calls_returns_text(self, build):
        result = await build(ScriptedLLM(["Which client do you mean?"])).respond_with_tools("u1", "schedule it")
        assert result.text == "Which client do you mean?"
        assert result.results == []

    @pytest.mark.asyncio
    async def test_existing_contact_counts_as_success(self, build):
        crm = RecordingCrm([{"id": "1", "email": "greg@y.com"}])
        llm = ScriptedLLM([LLMResponse(tool_calls=[
            tool_call("create_contact", json.dumps({"name": "Greg Y", "email": "greg@y.com"})),
        ])])

        result = await build(llm, Integrations(crm=crm)).respond_with_tools("u1", "add contact greg")

        assert result.results[0].ok
        assert "already a contact" in result.results[0].message

    @pytest.mark.asyncio
    async def test_tools_are_offered(self, build):
        from advisor.agent.tools import TOOL_HANDLERS
        llm = ScriptedLLM(["ok"])

        await build(llm).respond_with_tools("u1", "do something")

        offered = [t["function"]["name"] for t in llm.calls[0]["tools"]]
        assert offered == list(TOOL_HANDLERS)


class TestRuleActions:
    @pytest.mark.asyncio
    async def test_chain_sees_earlier_results(self, build):
        crm = RecordingCrm()
        email = RecordingEmail()
        llm = ScriptedLLM([
            LLMResponse(tool_calls=[tool_call("create_contact", json.dumps({"name": "Greg Y", "email": "greg@y.com"}))]),
            LLMResponse(tool_calls=[tool_call("send_email", json.dumps(
                {"to": "greg@y.com", "subject": "Welcome", "body": "Glad to meet you"}))]),
        ])
        actions = [
            RuleAction(type="create_contact", description="add the sender"),
            RuleAction(type="send_email", description="welcome them"),
        ]
        event = Event(type="gmail", data={"from": "Greg Y <greg@y.com>"})

        results = await build(llm, Integrations(email=email, crm=crm)).execute_rule_actions(
            "u1", actions, event, "When a new person emails me, add them and say hello"
        )

        assert [r.ok for r in results] == [True, True]
        assert crm.contacts[0]["email"] == "greg@y.com"
        assert email.sent[0]["subject"] == "Welcome"
        second_prompt = llm.calls[1]["messages"][0]["content"]
        assert "- create_contact: Created contact Greg Y <greg@y.com>" in second_prompt

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_the_chain(self, build):
        email = RecordingEmail()
        llm = ScriptedLLM([
            UpstreamError("model overloaded"),
            LLMResponse(tool_calls=[tool_call("send_email", json.dumps(
                {"to": "greg@y.com", "subject": "Hi", "body": "Hello"}))]),
        ])
        actions = [RuleAction(type="create_contact"), RuleAction(type="send_email")]

        results = await build(llm, Integrations(email=email)).execute_rule_actions(
            "u1", actions, Event(type="gmail"), "rule"
        )

        assert results[0].error_kind == ErrorKind.UPSTREAM_ERROR
        assert results[1].ok
        assert len(email.sent) == 1
