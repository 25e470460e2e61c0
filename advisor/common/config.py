"""
Configuration Management for Advisor Agents

Loads configuration from ~/.advisor/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("advisor.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".advisor"
CONFIG_PATH = CONFIG_DIR / "config.json"


@dataclass
class LLMConfig:
    """Chat/completion provider configuration"""
    provider: str = "openai"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 1000
    temperature: float = 0.7
    request_timeout: float = 30.0


@dataclass
class EmbeddingConfig:
    """Embedding model configuration"""
    mode: str = "openai"  # "openai" or "femb" (fastembed, on-device)
    model: str = "text-embedding-3-small"
    dimensions: int = 1536


@dataclass
class RetrievalConfig:
    """Similarity search configuration"""
    distance_threshold: float = 0.5  # cosine distance, strictly below
    limit: int = 10


@dataclass
class AgentConfig:
    """Per-user worker configuration"""
    message_timeout: float = 60.0
    cycle_interval: float = 30.0
    memory_size: int = 10
    rule_detection: bool = False
    max_queued_events: int = 1000


@dataclass
class StorageConfig:
    """Storage configuration"""
    path: str = ""  # empty keeps everything in memory


@dataclass
class AdvisorConfig:
    """Main advisor configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _section(data: dict, name: str) -> dict:
    """Return a config section, or {} (defaults) when it is not an object"""
    value = data.get(name, {})
    if not isinstance(value, dict):
        logger.warning("Ignoring config section %r: expected an object, got %s", name, type(value).__name__)
        return {}
    return value


def _env_float(name: str, current: float) -> float:
    raw = os.getenv(name)
    if not raw:
        return current
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not a number", name, raw)
        return current


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = _section(data, "llm")
    return LLMConfig(
        provider=llm_data.get("provider", "openai"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-20250514"),
        max_tokens=llm_data.get("max_tokens", 1000),
        temperature=llm_data.get("temperature", 0.7),
        request_timeout=llm_data.get("request_timeout", 30.0),
    )


def _parse_embedding_config(data: dict) -> EmbeddingConfig:
    """Parse embedding section from config dict"""
    embedding_data = _section(data, "embedding")
    return EmbeddingConfig(
        mode=embedding_data.get("mode", "openai"),
        model=embedding_data.get("model", "text-embedding-3-small"),
        dimensions=embedding_data.get("dimensions", 1536),
    )


def _parse_retrieval_config(data: dict) -> RetrievalConfig:
    """Parse retrieval section from config dict"""
    retrieval_data = _section(data, "retrieval")
    return RetrievalConfig(
        distance_threshold=retrieval_data.get("distance_threshold", 0.5),
        limit=retrieval_data.get("limit", 10),
    )


def _parse_agent_config(data: dict) -> AgentConfig:
    """Parse agent section from config dict"""
    agent_data = _section(data, "agent")
    return AgentConfig(
        message_timeout=agent_data.get("message_timeout", 60.0),
        cycle_interval=agent_data.get("cycle_interval", 30.0),
        memory_size=agent_data.get("memory_size", 10),
        rule_detection=agent_data.get("rule_detection", False),
        max_queued_events=agent_data.get("max_queued_events", 1000),
    )


def _parse_storage_config(data: dict) -> StorageConfig:
    storage_data = _section(data, "storage")
    return StorageConfig(path=storage_data.get("path", ""))


def load_config() -> AdvisorConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.advisor/config.json)
    3. Default values
    """
    config = AdvisorConfig()

    # Load from config file if exists
    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")

            config.llm = _parse_llm_config(data)
            config.embedding = _parse_embedding_config(data)
            config.retrieval = _parse_retrieval_config(data)
            config.agent = _parse_agent_config(data)
            config.storage = _parse_storage_config(data)
        except (ValueError, IOError) as e:
            logger.warning("Failed to load config file: %s", e)

    # LLM env var overrides (track env-sourced keys so they are never saved)
    _env_llm_map = {
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "ADVISOR_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    if os.getenv("EMBEDDING_MODE"):
        config.embedding.mode = os.getenv("EMBEDDING_MODE")
    if os.getenv("EMBEDDING_MODEL"):
        config.embedding.model = os.getenv("EMBEDDING_MODEL")

    config.retrieval.distance_threshold = _env_float("ADVISOR_DISTANCE_THRESHOLD", config.retrieval.distance_threshold)
    config.agent.message_timeout = _env_float("ADVISOR_MESSAGE_TIMEOUT", config.agent.message_timeout)
    config.agent.cycle_interval = _env_float("ADVISOR_CYCLE_INTERVAL", config.agent.cycle_interval)
    if os.getenv("ADVISOR_STORE_PATH"):
        config.storage.path = os.getenv("ADVISOR_STORE_PATH")

    return config


def save_config(config: AdvisorConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "max_tokens": config.llm.max_tokens,
        "temperature": config.llm.temperature,
        "request_timeout": config.llm.request_timeout,
    }
    for key in ("openai_api_key", "anthropic_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "llm": llm_section,
        "embedding": {
            "mode": config.embedding.mode,
            "model": config.embedding.model,
            "dimensions": config.embedding.dimensions,
        },
        "retrieval": {
            "distance_threshold": config.retrieval.distance_threshold,
            "limit": config.retrieval.limit,
        },
        "agent": {
            "message_timeout": config.agent.message_timeout,
            "cycle_interval": config.agent.cycle_interval,
            "memory_size": config.agent.memory_size,
            "rule_detection": config.agent.rule_detection,
            "max_queued_events": config.agent.max_queued_events,
        },
        "storage": {
            "path": config.storage.path,
        },
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
