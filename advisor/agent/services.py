"""Shared collaborators handed to every worker, and the factory that wires them."""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..common.broadcaster import Broadcaster
from ..common.config import AdvisorConfig, AgentConfig, LLMConfig, load_config
from ..common.embedding_service import EmbeddingService
from ..common.llm_client import LLMClient
from ..common.storage import InMemoryStorage, Storage
from ..integrations import Integrations
from ..retriever import RetrievalService
from .dispatcher import ToolDispatcher
from .instructions import InstructionMatcher
from .rule_detector import RuleDetector

logger = logging.getLogger("advisor.agent.services")


@dataclass
class AgentServices:
    """Everything a worker needs besides its own state"""
    storage: Storage
    retrieval: RetrievalService
    dispatcher: ToolDispatcher
    broadcaster: Broadcaster = field(default_factory=Broadcaster)
    matcher: InstructionMatcher = field(default_factory=InstructionMatcher)
    rule_detector: Optional[RuleDetector] = None
    agent_config: AgentConfig = field(default_factory=AgentConfig)


def create_llm_client(config: LLMConfig) -> LLMClient:
    model = config.anthropic_model if config.provider == "anthropic" else config.openai_model
    return LLMClient(
        provider=config.provider,
        model=model,
        openai_api_key=config.openai_api_key,
        anthropic_api_key=config.anthropic_api_key,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
        timeout=config.request_timeout,
    )


def build_services(
    config: Optional[AdvisorConfig] = None,
    integrations: Optional[Integrations] = None,
    storage: Optional[Storage] = None,
    llm: Optional[LLMClient] = None,
    embedding_service: Optional[EmbeddingService] = None,
) -> AgentServices:
    """
    Wire the shared services from configuration.

    Any collaborator passed in explicitly is used as-is; the rest are built
    from ``config`` (default: load_config()).
    """
    config = config or load_config()
    integrations = integrations or Integrations()
    storage = storage or InMemoryStorage(Path(config.storage.path) if config.storage.path else None)
    llm = llm or create_llm_client(config.llm)
    if embedding_service is None:
        embedding_service = EmbeddingService(
            mode=config.embedding.mode,
            model=config.embedding.model,
            api_key=config.llm.openai_api_key,
            dimensions=config.embedding.dimensions if config.embedding.mode == "openai" else None,
        )

    retrieval = RetrievalService(storage, embedding_service, config.retrieval)
    dispatcher = ToolDispatcher(llm, integrations, storage, retrieval)

    if not llm.is_available:
        logger.warning("LLM unavailable; replies will use the fallback text")

    return AgentServices(
        storage=storage,
        retrieval=retrieval,
        dispatcher=dispatcher,
        rule_detector=RuleDetector(llm),
        agent_config=config.agent,
    )
