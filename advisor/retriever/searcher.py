"""
Searcher

Retrieves grounding context for a user's question across three corpora
(emails, CRM contacts, CRM notes).

Vector path: embed the question, keep rows whose cosine distance is below
the threshold, nearest first. If the question cannot be embedded, fall back
to case-insensitive substring search ordered by recency. Retrieval never
raises: the worst case is an empty context.
"""

import asyncio
import logging
from typing import Dict, List, Optional
from dataclasses import dataclass, field

from ..common.config import RetrievalConfig
from ..common.embedding_service import EmbeddingService
from ..common.schemas import Corpus, EmbeddingRecord
from ..common.storage import Storage
from .query_processor import ParsedQuery, QueryProcessor, QuestionType

logger = logging.getLogger("advisor.retriever.searcher")

METHOD_VECTOR = "vector"
METHOD_TEXT = "text"


@dataclass
class SearchHit:
    """A single retrieved document"""
    record: EmbeddingRecord
    corpus: Corpus
    distance: Optional[float] = None  # None when found by text search

    @property
    def summary(self) -> str:
        return getattr(self.record, "summary", self.record.content[:80])


@dataclass
class RetrievalContext:
    """Merged retrieval result handed to the LLM"""
    query: str
    question_type: QuestionType = QuestionType.GENERAL
    method: str = METHOD_VECTOR
    emails: List[SearchHit] = field(default_factory=list)
    contacts: List[SearchHit] = field(default_factory=list)
    notes: List[SearchHit] = field(default_factory=list)

    @property
    def counts(self) -> Dict[str, int]:
        return {
            Corpus.EMAILS.value: len(self.emails),
            Corpus.CONTACTS.value: len(self.contacts),
            Corpus.NOTES.value: len(self.notes),
        }

    @property
    def total(self) -> int:
        return len(self.emails) + len(self.contacts) + len(self.notes)

    @property
    def is_empty(self) -> bool:
        return self.total == 0

    @property
    def summary_text(self) -> str:
        c = self.counts
        return (
            f"Found {c['emails']} relevant emails, {c['contacts']} contacts "
            f"and {c['notes']} notes"
        )

    def hits(self, corpus: Corpus) -> List[SearchHit]:
        return {
            Corpus.EMAILS: self.emails,
            Corpus.CONTACTS: self.contacts,
            Corpus.NOTES: self.notes,
        }[corpus]

    def to_prompt(self) -> str:
        """Render the context as a prompt section"""
        if self.is_empty:
            return "No relevant emails, contacts or notes were found."

        lines = [f"Question type: {self.question_type.value}"]
        if self.emails:
            lines.append("\nRelevant emails:")
            for hit in self.emails:
                r = hit.record
                lines.append(f"- From {r.sender} | Subject: {r.subject}\n  {r.content[:500]}")
        if self.contacts:
            lines.append("\nRelevant contacts:")
            for hit in self.contacts:
                r = hit.record
                details = ", ".join(p for p in (r.email, r.company, r.lifecycle_stage) if p)
                lines.append(f"- {r.full_name or r.email} ({details})")
                if r.notes:
                    lines.append(f"  Notes: {r.notes[:300]}")
        if self.notes:
            lines.append("\nRelevant notes:")
            for hit in self.notes:
                lines.append(f"- {hit.record.content[:500]}")
        return "\n".join(lines)


class RetrievalService:
    """
    Searches a user's emails, contacts and notes.

    Features:
    - Cosine-distance ranking with a fixed threshold
    - Per-corpus result cap
    - Substring fallback when embeddings are unavailable
    """

    def __init__(
        self,
        storage: Storage,
        embedding_service: Optional[EmbeddingService],
        config: Optional[RetrievalConfig] = None,
        query_processor: Optional[QueryProcessor] = None,
    ):
        """
        Initialize retrieval service.

        Args:
            storage: Store holding the embedded corpora
            embedding_service: For embedding questions (None forces text search)
            config: Threshold and limit
            query_processor: Question parser (default QueryProcessor())
        """
        self._storage = storage
        self._embedding = embedding_service
        self._config = config or RetrievalConfig()
        self._processor = query_processor or QueryProcessor()

    @property
    def threshold(self) -> float:
        return self._config.distance_threshold

    async def search(
        self,
        user_id: str,
        query: str,
        limit: Optional[int] = None,
        corpora: Optional[List[Corpus]] = None,
    ) -> RetrievalContext:
        """
        Retrieve context for a question.

        Args:
            user_id: Owner of the corpora
            query: Natural-language question
            limit: Per-corpus cap (default from config)
            corpora: Restrict to these corpora (default all three)

        Returns:
            RetrievalContext, empty on any failure
        """
        limit = limit or self._config.limit
        corpora = corpora or list(Corpus)
        parsed = self._processor.parse(query)
        context = RetrievalContext(query=query, question_type=parsed.question_type)

        if not parsed.cleaned:
            return context

        vector = await self._embed_query(query)
        if vector is not None:
            try:
                for corpus in corpora:
                    rows = self._storage.similarity_search(
                        corpus, user_id, vector, self.threshold, limit
                    )
                    context.hits(corpus).extend(
                        SearchHit(record=r, corpus=corpus, distance=d) for r, d in rows
                    )
                logger.info("%s for %s (vector)", context.summary_text, user_id)
                return context
            except Exception as e:
                logger.warning("Vector search failed, falling back to text search: %s", e)
                context = RetrievalContext(query=query, question_type=parsed.question_type)

        return self._text_search(user_id, parsed, context, corpora, limit)

    async def search_emails(
        self,
        user_id: str,
        query: str,
        sender: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[SearchHit]:
        """Search the email corpus only, optionally filtered by sender."""
        context = await self.search(user_id, query, limit=limit, corpora=[Corpus.EMAILS])
        hits = context.emails
        if sender:
            needle = sender.lower()
            hits = [h for h in hits if needle in (h.record.sender or "").lower()]
        return hits

    async def _embed_query(self, query: str) -> Optional[List[float]]:
        if self._embedding is None:
            return None
        try:
            return await asyncio.to_thread(self._embedding.embed_single, query)
        except Exception as e:
            logger.warning("Embedding unavailable, using text search: %s", e)
            return None

    def _text_search(
        self,
        user_id: str,
        parsed: ParsedQuery,
        context: RetrievalContext,
        corpora: List[Corpus],
        limit: int,
    ) -> RetrievalContext:
        context.method = METHOD_TEXT
        for corpus in corpora:
            try:
                rows = self._storage.text_search(corpus, user_id, parsed.search_terms, limit)
            except Exception as e:
                logger.error("Text search failed for %s: %s", corpus.value, e, exc_info=True)
                continue
            context.hits(corpus).extend(SearchHit(record=r, corpus=corpus) for r in rows)

        logger.info("%s for %s (text)", context.summary_text, user_id)
        return context
