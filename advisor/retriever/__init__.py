"""
Advisor Retriever

Grounding context from a user's emails, contacts and notes.
"""

from .query_processor import QueryProcessor, ParsedQuery, QuestionType
from .searcher import RetrievalService, RetrievalContext, SearchHit

__all__ = [
    "QueryProcessor",
    "ParsedQuery",
    "QuestionType",
    "RetrievalService",
    "RetrievalContext",
    "SearchHit",
]
