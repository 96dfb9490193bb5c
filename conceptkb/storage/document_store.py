"""Collection-oriented document store.

Records are plain JSON-compatible dicts grouped into named collections. Filters
and sort keys are callables over those dicts; the repositories build them from
typed filter objects. Two implementations are provided: an in-memory store
(tests, single-process runs) and a JSON-file store that writes one file per
collection.
"""

from __future__ import annotations

import copy
import json
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Set

from loguru import logger

from conceptkb.utils.config import StorageConfig

Document = Dict[str, Any]
Predicate = Callable[[Document], bool]
SortKey = Callable[[Document], Any]


def deep_merge(base: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``overrides`` into ``base`` recursively (overrides win, lists are replaced)."""
    merged: Dict[str, Any] = dict(base)
    for key, value in overrides.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _match_all(_: Document) -> bool:
    return True


class DocumentStore(ABC):
    """Persistence capability consumed by the repositories."""

    @abstractmethod
    def create(self, collection: str, document: Document) -> Document:
        """Insert a document and return a copy of it."""

    @abstractmethod
    def create_unless(self, collection: str, document: Document, conflict: Predicate) -> bool:
        """Atomically insert unless a document matching ``conflict`` exists."""

    @abstractmethod
    def find_one(self, collection: str, where: Predicate) -> Optional[Document]:
        """Return the first matching document, or None."""

    @abstractmethod
    def find_many(
        self,
        collection: str,
        where: Predicate | None = None,
        *,
        order_by: SortKey | None = None,
        descending: bool = False,
        limit: int | None = None,
        skip: int = 0,
    ) -> List[Document]:
        """Return matching documents, optionally sorted and paged."""

    @abstractmethod
    def update_one(self, collection: str, where: Predicate, partial: Mapping[str, Any]) -> bool:
        """Deep-merge ``partial`` onto the first match. Returns False when nothing matched."""

    @abstractmethod
    def delete_many(self, collection: str, where: Predicate) -> int:
        """Delete all matches and return how many were removed."""

    @abstractmethod
    def count(self, collection: str, where: Predicate | None = None) -> int:
        """Count matching documents."""

    @abstractmethod
    def transaction(self) -> Any:
        """Context manager grouping writes into an all-or-nothing unit."""


class InMemoryDocumentStore(DocumentStore):
    """Thread-safe in-process store.

    Every call holds a re-entrant lock, and ``transaction()`` snapshots the
    collections so a failure inside the block restores the previous state.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, List[Document]] = {}
        self._lock = threading.RLock()
        self._depth = 0

    # Public API -----------------------------------------------------
    def create(self, collection: str, document: Document) -> Document:
        with self._lock:
            stored = copy.deepcopy(dict(document))
            self._docs(collection).append(stored)
            self._written(collection)
            return copy.deepcopy(stored)

    def create_unless(self, collection: str, document: Document, conflict: Predicate) -> bool:
        with self._lock:
            if any(conflict(doc) for doc in self._docs(collection)):
                return False
            self.create(collection, document)
            return True

    def find_one(self, collection: str, where: Predicate) -> Optional[Document]:
        with self._lock:
            for doc in self._docs(collection):
                if where(doc):
                    return copy.deepcopy(doc)
            return None

    def find_many(
        self,
        collection: str,
        where: Predicate | None = None,
        *,
        order_by: SortKey | None = None,
        descending: bool = False,
        limit: int | None = None,
        skip: int = 0,
    ) -> List[Document]:
        where = where or _match_all
        with self._lock:
            matches = [doc for doc in self._docs(collection) if where(doc)]
            if order_by is not None:
                matches.sort(key=order_by, reverse=descending)
            end = None if limit is None else max(skip, 0) + max(limit, 0)
            return copy.deepcopy(matches[max(skip, 0) : end])

    def update_one(self, collection: str, where: Predicate, partial: Mapping[str, Any]) -> bool:
        with self._lock:
            docs = self._docs(collection)
            for index, doc in enumerate(docs):
                if where(doc):
                    docs[index] = deep_merge(doc, copy.deepcopy(dict(partial)))
                    self._written(collection)
                    return True
            return False

    def delete_many(self, collection: str, where: Predicate) -> int:
        with self._lock:
            docs = self._docs(collection)
            kept = [doc for doc in docs if not where(doc)]
            removed = len(docs) - len(kept)
            if removed:
                self._collections[collection] = kept
                self._written(collection)
            return removed

    def count(self, collection: str, where: Predicate | None = None) -> int:
        where = where or _match_all
        with self._lock:
            return sum(1 for doc in self._docs(collection) if where(doc))

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            snapshot = copy.deepcopy(self._collections) if self._depth == 0 else None
            self._depth += 1
            try:
                yield
            except Exception:
                if snapshot is not None:
                    logger.warning("Rolling back document store transaction")
                    self._collections = snapshot
                    self._rolled_back()
                raise
            finally:
                self._depth -= 1
            if self._depth == 0:
                self._committed()

    # Hooks ----------------------------------------------------------
    def _docs(self, collection: str) -> List[Document]:
        return self._collections.setdefault(collection, [])

    def _written(self, collection: str) -> None:
        """Called after each mutation of ``collection``."""

    def _committed(self) -> None:
        """Called when the outermost transaction finishes cleanly."""

    def _rolled_back(self) -> None:
        """Called after a transaction restored its snapshot."""


class JsonFileDocumentStore(InMemoryDocumentStore):
    """In-memory store mirrored to ``<root>/<collection>.json``.

    Writes inside a transaction are flushed once, when it commits.
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._dirty: Set[str] = set()
        for path in sorted(self.root.glob("*.json")):
            payload = json.loads(path.read_text(encoding="utf-8"))
            if not isinstance(payload, list):
                raise ValueError(f"Collection file must contain a JSON list: {path}")
            self._collections[path.stem] = payload
        logger.info(f"Loaded {len(self._collections)} collections from {self.root}")

    def _written(self, collection: str) -> None:
        self._dirty.add(collection)
        if self._depth == 0:
            self._flush()

    def _committed(self) -> None:
        self._flush()

    def _rolled_back(self) -> None:
        self._dirty.clear()

    def _flush(self) -> None:
        for collection in sorted(self._dirty):
            target = self.root / f"{collection}.json"
            payload = self._collections.get(collection, [])
            tmp = target.with_suffix(".json.tmp")
            tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(target)
        self._dirty.clear()


def create_document_store(config: StorageConfig | None = None) -> DocumentStore:
    """Build the store selected by ``config.backend``."""
    config = config or StorageConfig()
    if config.backend == "memory":
        return InMemoryDocumentStore()
    return JsonFileDocumentStore(config.data_dir)
