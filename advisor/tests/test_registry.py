"""Tests for the per-user worker registry."""

import asyncio

import pytest

from advisor.common.errors import ErrorKind


@pytest.fixture
def registry(make_services):
    from advisor.agent.registry import WorkerRegistry
    return WorkerRegistry(make_services())


class TestWorkerRegistry:
    @pytest.mark.asyncio
    async def test_one_worker_per_user(self, registry):
        first = registry.get_or_create("u1")
        again = registry.get_or_create("u1")
        other = registry.get_or_create("u2")

        assert first is again
        assert other is not first
        assert len(registry) == 2
        assert "u1" in registry
        await registry.stop_all()
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_concurrent_first_messages_share_a_worker(self, registry):
        replies = await asyncio.gather(*(registry.process_message("u1", f"hi {i}") for i in range(5)))

        assert all(r.ok for r in replies)
        assert len(registry) == 1
        assert registry.get_status("u1")["memory"] == 5
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_users_do_not_share_state(self, registry):
        await registry.process_message("u1", "always cc my assistant on emails")

        assert registry.get_status("u1")["instructions"] == 1
        await registry.process_message("u2", "hello")
        assert registry.get_status("u2")["instructions"] == 0
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_missing_user_id(self, registry):
        reply = await registry.process_message("", "hello")
        assert reply.error == ErrorKind.INVALID_ARGUMENTS
        with pytest.raises(ValueError):
            registry.get_or_create("")

    @pytest.mark.asyncio
    async def test_handle_event_returns_immediately(self, registry):
        event = registry.handle_event("u1", "gmail", {"from": "greg@y.com"})

        assert event.type == "gmail"
        assert event.data == {"from": "greg@y.com"}
        report = await registry.get_or_create("u1").run_cycle()
        assert report.events_drained == 1
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_status_and_stop(self, registry):
        assert registry.get_status("nobody") is None
        registry.get_or_create("u1")

        status = registry.get_status("u1")
        assert status["status"] == "active"
        assert status["pending_tasks"] == 0

        assert await registry.stop("u1") is True
        assert await registry.stop("u1") is False
        assert registry.get_status("u1") is None

    @pytest.mark.asyncio
    async def test_stopped_worker_is_replaced(self, registry):
        worker = registry.get_or_create("u1")
        await worker.stop()

        replacement = registry.get_or_create("u1")

        assert replacement is not worker
        assert replacement.is_running
        await registry.stop_all()
