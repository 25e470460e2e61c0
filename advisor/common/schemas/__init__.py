"""
Advisor Record Schemas

Tasks, standing instructions, events and embedded documents.
"""

from .records import (
    Task,
    TaskStatus,
    TaskType,
    EventType,
    Event,
    RuleAction,
    OngoingInstruction,
    Corpus,
    EmbeddingRecord,
    EmailEmbedding,
    ContactEmbedding,
    ContactNote,
    CORPUS_MODELS,
    ALL_EVENT_TYPES,
    generate_id,
    utcnow,
)

__all__ = [
    "Task",
    "TaskStatus",
    "TaskType",
    "EventType",
    "Event",
    "RuleAction",
    "OngoingInstruction",
    "Corpus",
    "EmbeddingRecord",
    "EmailEmbedding",
    "ContactEmbedding",
    "ContactNote",
    "CORPUS_MODELS",
    "ALL_EVENT_TYPES",
    "generate_id",
    "utcnow",
]
