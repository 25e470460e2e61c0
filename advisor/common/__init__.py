"""
Advisor Common Module

Shared infrastructure for the agent worker, tool dispatcher and retriever.
"""

from .config import AdvisorConfig, load_config
from .embedding_service import EmbeddingService
from .errors import AdvisorError, ErrorKind, classify
from .llm_client import LLMClient
from .storage import InMemoryStorage, Storage
from .broadcaster import Broadcaster

__all__ = [
    "AdvisorConfig",
    "load_config",
    "EmbeddingService",
    "AdvisorError",
    "ErrorKind",
    "classify",
    "LLMClient",
    "InMemoryStorage",
    "Storage",
    "Broadcaster",
]
