"""
Storage

Durable-storage interface used by the agents, plus an in-memory
implementation that can snapshot its tables to a JSON file.

Stored records are copied on the way in and on the way out, so callers
never share mutable state with the store.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from datetime import timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .embedding_service import cosine_distances
from .schemas import (
    CORPUS_MODELS,
    Corpus,
    EmbeddingRecord,
    OngoingInstruction,
    Task,
    TaskStatus,
)

logger = logging.getLogger("advisor.common.storage")


def _recency_key(record: EmbeddingRecord):
    ts = record.recency
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


class Storage(ABC):
    """Persistence operations the agents depend on."""

    # -- tasks --------------------------------------------------------------

    @abstractmethod
    def create_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    def update_task(self, task: Task) -> Task:
        pass

    @abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]:
        pass

    @abstractmethod
    def list_tasks(self, user_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        pass

    # -- instructions -------------------------------------------------------

    @abstractmethod
    def create_instruction(self, instruction: OngoingInstruction) -> OngoingInstruction:
        pass

    @abstractmethod
    def update_instruction(self, instruction: OngoingInstruction) -> OngoingInstruction:
        pass

    @abstractmethod
    def list_instructions(self, user_id: str, active_only: bool = True) -> List[OngoingInstruction]:
        pass

    def deactivate_instruction(self, instruction_id: str, user_id: str) -> bool:
        """Deactivate an instruction. Returns False if it does not exist."""
        for instruction in self.list_instructions(user_id, active_only=False):
            if instruction.id == instruction_id:
                instruction.is_active = False
                self.update_instruction(instruction)
                return True
        return False

    # -- embedded documents -------------------------------------------------

    @abstractmethod
    def add_embedding(self, corpus: Corpus, record: EmbeddingRecord) -> EmbeddingRecord:
        pass

    @abstractmethod
    def list_embeddings(self, corpus: Corpus, user_id: str) -> List[EmbeddingRecord]:
        pass

    @abstractmethod
    def similarity_search(
        self,
        corpus: Corpus,
        user_id: str,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
    ) -> List[Tuple[EmbeddingRecord, float]]:
        """Rows with cosine distance strictly below threshold, nearest first."""

    @abstractmethod
    def text_search(
        self,
        corpus: Corpus,
        user_id: str,
        terms: Sequence[str],
        limit: int,
    ) -> List[EmbeddingRecord]:
        """Rows whose text fields contain any term (case-insensitive), newest first."""


class InMemoryStorage(Storage):
    """
    Thread-safe in-memory store.

    When a path is given, every write is followed by a JSON snapshot and the
    snapshot is reloaded on construction.
    """

    def __init__(self, path: Optional[Path] = None):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._tasks: Dict[str, Task] = {}
        self._instructions: Dict[str, OngoingInstruction] = {}
        self._corpora: Dict[Corpus, List[EmbeddingRecord]] = {c: [] for c in Corpus}
        self._dimensions: Dict[Corpus, int] = {}
        self._load()

    # -- persistence --------------------------------------------------------

    def _load(self) -> None:
        """Load snapshot from disk"""
        if not self._path or not self._path.exists():
            return

        try:
            with open(self._path) as f:
                data = json.load(f)

            for item in data.get("tasks", []):
                task = Task.model_validate(item)
                self._tasks[task.id] = task
            for item in data.get("instructions", []):
                instruction = OngoingInstruction.model_validate(item)
                self._instructions[instruction.id] = instruction
            for corpus in Corpus:
                model = CORPUS_MODELS[corpus]
                for item in data.get("corpora", {}).get(corpus.value, []):
                    self._append_record(corpus, model.model_validate(item))
        except (json.JSONDecodeError, IOError, ValueError) as e:
            logger.warning("Failed to load store snapshot %s: %s", self._path, e)

    def _save(self) -> None:
        """Save snapshot to disk. Caller holds the lock."""
        if not self._path:
            return

        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "tasks": [t.model_dump(mode="json") for t in self._tasks.values()],
            "instructions": [i.model_dump(mode="json") for i in self._instructions.values()],
            "corpora": {
                corpus.value: [r.model_dump(mode="json") for r in records]
                for corpus, records in self._corpora.items()
            },
        }
        with open(self._path, "w") as f:
            json.dump(data, f, indent=2, default=str)

    # -- tasks --------------------------------------------------------------

    def create_task(self, task: Task) -> Task:
        with self._lock:
            if task.id in self._tasks:
                raise ValueError(f"Task already exists: {task.id}")
            self._tasks[task.id] = task.model_copy(deep=True)
            self._save()
        return task

    def update_task(self, task: Task) -> Task:
        with self._lock:
            if task.id not in self._tasks:
                raise KeyError(task.id)
            self._tasks[task.id] = task.model_copy(deep=True)
            self._save()
        return task

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def list_tasks(self, user_id: str, status: Optional[TaskStatus] = None) -> List[Task]:
        with self._lock:
            return [
                t.model_copy(deep=True)
                for t in self._tasks.values()
                if t.user_id == user_id and (status is None or t.status == status)
            ]

    # -- instructions -------------------------------------------------------

    def create_instruction(self, instruction: OngoingInstruction) -> OngoingInstruction:
        with self._lock:
            self._instructions[instruction.id] = instruction.model_copy(deep=True)
            self._save()
        return instruction

    def update_instruction(self, instruction: OngoingInstruction) -> OngoingInstruction:
        with self._lock:
            if instruction.id not in self._instructions:
                raise KeyError(instruction.id)
            self._instructions[instruction.id] = instruction.model_copy(deep=True)
            self._save()
        return instruction

    def list_instructions(self, user_id: str, active_only: bool = True) -> List[OngoingInstruction]:
        with self._lock:
            return [
                i.model_copy(deep=True)
                for i in self._instructions.values()
                if i.user_id == user_id and (i.is_active or not active_only)
            ]

    # -- embedded documents -------------------------------------------------

    def _append_record(self, corpus: Corpus, record: EmbeddingRecord) -> None:
        if record.embedding is not None:
            expected = self._dimensions.setdefault(corpus, len(record.embedding))
            if len(record.embedding) != expected:
                raise ValueError(
                    f"{corpus.value}: embedding length {len(record.embedding)} != {expected}"
                )
        self._corpora[corpus].append(record)

    def add_embedding(self, corpus: Corpus, record: EmbeddingRecord) -> EmbeddingRecord:
        with self._lock:
            self._append_record(corpus, record.model_copy(deep=True))
            self._save()
        return record

    def list_embeddings(self, corpus: Corpus, user_id: str) -> List[EmbeddingRecord]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._corpora[corpus] if r.user_id == user_id]

    def similarity_search(
        self,
        corpus: Corpus,
        user_id: str,
        query_vector: Sequence[float],
        threshold: float,
        limit: int,
    ) -> List[Tuple[EmbeddingRecord, float]]:
        with self._lock:
            rows = [
                r for r in self._corpora[corpus]
                if r.user_id == user_id and r.embedding is not None
            ]
            if not rows:
                return []
            distances = cosine_distances(list(query_vector), [r.embedding for r in rows])

        # sorted() is stable, so equal distances keep storage order
        ranked = sorted(
            ((r, d) for r, d in zip(rows, distances) if d < threshold),
            key=lambda pair: pair[1],
        )
        return [(r.model_copy(deep=True), d) for r, d in ranked[:limit]]

    def text_search(
        self,
        corpus: Corpus,
        user_id: str,
        terms: Sequence[str],
        limit: int,
    ) -> List[EmbeddingRecord]:
        needles = [t.lower() for t in terms if t and t.strip()]
        if not needles:
            return []

        with self._lock:
            matches = []
            for record in self._corpora[corpus]:
                if record.user_id != user_id:
                    continue
                haystack = " ".join(record.text_fields()).lower()
                if any(n in haystack for n in needles):
                    matches.append(record)

        matches.sort(key=_recency_key, reverse=True)
        return [r.model_copy(deep=True) for r in matches[:limit]]
