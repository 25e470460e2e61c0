"""Shared fixtures for advisor tests."""

import pytest

from advisor.common.config import AgentConfig, RetrievalConfig
from advisor.common.storage import InMemoryStorage
from advisor.integrations import Integrations
from advisor.tests.fakes import (
    KeywordEmbedder,
    RecordingCalendar,
    RecordingCrm,
    RecordingEmail,
    ScriptedLLM,
)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def llm():
    return ScriptedLLM()


@pytest.fixture
def connected():
    """Integrations with every provider connected"""
    return Integrations(email=RecordingEmail(), calendar=RecordingCalendar(), crm=RecordingCrm())


@pytest.fixture
def make_services(storage, embedder, llm):
    """Build AgentServices around the fakes; override pieces per test."""
    from advisor.agent.dispatcher import ToolDispatcher
    from advisor.agent.services import AgentServices
    from advisor.retriever import RetrievalService

    def _make(integrations=None, llm_client=None, embedding=None, **agent_overrides):
        agent_config = AgentConfig(cycle_interval=0, message_timeout=5.0)
        for key, value in agent_overrides.items():
            setattr(agent_config, key, value)
        retrieval = RetrievalService(storage, embedding or embedder, RetrievalConfig())
        dispatcher = ToolDispatcher(llm_client or llm, integrations or Integrations(), storage, retrieval)
        return AgentServices(
            storage=storage,
            retrieval=retrieval,
            dispatcher=dispatcher,
            agent_config=agent_config,
        )

    return _make
