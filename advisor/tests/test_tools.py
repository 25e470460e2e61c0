"""Tests for tool argument models, handlers and the broadcaster."""

import asyncio

import pytest
from pydantic import ValidationError

from advisor.agent import tools
from advisor.integrations import Integrations


@pytest.fixture
def ctx(storage, embedder, connected):
    from advisor.retriever import RetrievalService
    return tools.ToolContext(
        user_id="u1", integrations=connected, storage=storage,
        retrieval=RetrievalService(storage, embedder),
    )


class TestAddressHelpers:
    def test_extract_email(self):
        assert tools.extract_email_from_address("Sara Lee <Sara@X.com>") == "sara@x.com"
        assert tools.extract_email_from_address("no address here") == ""

    def test_extract_name(self):
        assert tools.extract_name_from_address('"Sara Lee" <sara@x.com>') == "Sara Lee"
        assert tools.extract_name_from_address("greg@y.com") == "greg"

    def test_split_name(self):
        assert tools.split_name("Mary Ann Smith") == ("Mary", "Ann Smith")
        assert tools.split_name("") == ("", "")


class TestArgumentModels:
    def test_email_is_normalized(self):
        args = tools.SendEmailArgs(to=" Greg@Y.com ", subject="Hi", body="Hello")
        assert args.to == "greg@y.com"

    def test_bad_email_rejected(self):
        with pytest.raises(ValidationError):
            tools.ScheduleMeetingArgs(client_email="sara at x")

    def test_duration_bounds(self):
        with pytest.raises(ValidationError):
            tools.ScheduleMeetingArgs(client_email="sara@x.com", duration_minutes=1000)

    def test_task_type_is_closed(self):
        with pytest.raises(ValidationError):
            tools.CreateTaskArgs(title="x", task_type="fax")

    def test_schemas_describe_every_tool(self):
        names = [d["function"]["name"] for d in tools.TOOL_DEFINITIONS]
        assert names == [
            "search_emails", "search_contacts", "schedule_meeting", "find_free_time",
            "send_email", "create_contact", "add_contact_note", "create_task",
        ]
        schedule = tools.TOOL_HANDLERS["schedule_meeting"].schema["function"]["parameters"]
        assert schedule["required"] == ["client_email"]


class TestHandlers:
    @pytest.mark.asyncio
    async def test_find_free_time(self, ctx):
        result = await tools.find_free_time(ctx, tools.FindFreeTimeArgs())
        assert result.ok
        assert "2026-10-19T14:00:00" in result.message

    @pytest.mark.asyncio
    async def test_find_free_time_needs_calendar(self, ctx):
        from advisor.common.errors import ErrorKind
        ctx.integrations = Integrations()
        result = await tools.find_free_time(ctx, tools.FindFreeTimeArgs())
        assert result.error_kind == ErrorKind.NOT_CONNECTED

    @pytest.mark.asyncio
    async def test_send_email_deferred(self, ctx, storage):
        ctx.integrations = Integrations()
        result = await tools.send_email(ctx, tools.SendEmailArgs(to="greg@y.com", subject="Hi", body="Hello"))

        assert result.ok
        assert result.data == {"deferred": True}
        assert result.message.startswith("gmail is not connected, so I created a task to send email to greg@y.com")
        assert storage.get_task(result.task.id).parameters["body"] == "Hello"

    @pytest.mark.asyncio
    async def test_add_note_requires_existing_contact(self, ctx):
        from advisor.common.errors import ErrorKind
        result = await tools.add_contact_note(ctx, tools.AddContactNoteArgs(contact_email="who@z.com", note="hi"))
        assert result.error_kind == ErrorKind.INVALID_ARGUMENTS

        ctx.integrations.crm.contacts.append({"id": "9", "email": "who@z.com"})
        result = await tools.add_contact_note(ctx, tools.AddContactNoteArgs(contact_email="who@z.com", note="hi"))
        assert result.ok
        assert ctx.integrations.crm.notes == [{"contact_id": "9", "content": "hi"}]

    @pytest.mark.asyncio
    async def test_create_task(self, ctx, storage):
        result = await tools.create_task(ctx, tools.CreateTaskArgs(title="Call Sara", task_type="follow_up"))
        assert storage.get_task(result.task.id).title == "Call Sara"

    @pytest.mark.asyncio
    async def test_search_emails_empty(self, ctx):
        result = await tools.search_emails(ctx, tools.SearchEmailsArgs(query="baseball"))
        assert result.message == "No emails found matching 'baseball'"


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_fan_out_and_unsubscribe(self):
        from advisor.common.broadcaster import Broadcaster, agent_topic
        broadcaster = Broadcaster()
        topic = agent_topic("u1")
        a = broadcaster.subscribe(topic)
        b = broadcaster.subscribe(topic)

        assert broadcaster.publish(topic, {"n": 1}) == 2
        assert a.get_nowait() == b.get_nowait() == {"n": 1}

        broadcaster.unsubscribe(topic, a)
        assert broadcaster.subscriber_count(topic) == 1
        assert broadcaster.publish(agent_topic("u2"), {"n": 2}) == 0

    @pytest.mark.asyncio
    async def test_full_subscriber_is_dropped(self):
        from advisor.common.broadcaster import Broadcaster
        broadcaster = Broadcaster(maxsize=1)
        slow = broadcaster.subscribe("t")

        broadcaster.publish("t", {"n": 1})
        assert broadcaster.publish("t", {"n": 2}) == 0
        assert broadcaster.subscriber_count("t") == 0
        assert slow.qsize() == 1
        await asyncio.sleep(0)
