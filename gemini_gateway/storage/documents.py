from __future__ import annotations

import contextlib
import copy
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from threading import RLock
from typing import Any, Callable
from uuid import uuid4

import yaml

logger = logging.getLogger("uvicorn.error")

Document = dict[str, Any]
Subscriber = Callable[[str, Document | None], None]


class DocumentStoreError(RuntimeError):
    """Raised when the backing store cannot be read or written."""


class DocumentStore(ABC):
    """Collection/document store with change subscriptions.

    Subscribers receive ``(doc_id, document)`` after every write in their
    collection, and ``(doc_id, None)`` after a delete. A failing subscriber
    is logged and does not affect the write.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: dict[str, list[Subscriber]] = {}

    @abstractmethod
    def _load_all(self) -> dict[str, dict[str, Document]]:
        raise NotImplementedError

    @abstractmethod
    def _save_all(self, data: dict[str, dict[str, Document]]) -> None:
        raise NotImplementedError

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self._lock:
            document = self._load_all().get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    def list(self, collection: str) -> dict[str, Document]:
        with self._lock:
            return copy.deepcopy(self._load_all().get(collection, {}))

    def set(
        self,
        collection: str,
        doc_id: str,
        document: Document,
        *,
        merge: bool = False,
    ) -> Document:
        with self._lock:
            data = self._load_all()
            documents = data.setdefault(collection, {})
            current = documents.get(doc_id) if merge else None
            stored = {**(current or {}), **copy.deepcopy(document)}
            documents[doc_id] = stored
            self._save_all(data)
            result = copy.deepcopy(stored)
        self._notify(collection, doc_id, result)
        return result

    def update(
        self,
        collection: str,
        doc_id: str,
        mutate: Callable[[Document | None], Document],
    ) -> Document:
        """Read, change and write one document under the store lock.

        ``mutate`` gets a copy of the current document (``None`` when absent)
        and returns the replacement. An exception from ``mutate`` leaves the
        store unchanged.
        """
        with self._lock:
            data = self._load_all()
            current = data.get(collection, {}).get(doc_id)
            replacement = mutate(copy.deepcopy(current))
            data.setdefault(collection, {})[doc_id] = copy.deepcopy(replacement)
            self._save_all(data)
            result = copy.deepcopy(replacement)
        self._notify(collection, doc_id, result)
        return result

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            data = self._load_all()
            documents = data.get(collection, {})
            if doc_id not in documents:
                return False
            del documents[doc_id]
            self._save_all(data)
        self._notify(collection, doc_id, None)
        return True

    def subscribe(self, collection: str, callback: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.setdefault(collection, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(collection, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def _notify(self, collection: str, doc_id: str, document: Document | None) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(collection, []))
        for callback in callbacks:
            try:
                callback(doc_id, copy.deepcopy(document))
            except Exception as exc:
                logger.warning(
                    "store_subscriber_failed collection=%s doc_id=%s error=%s",
                    collection,
                    doc_id,
                    exc,
                )


class InMemoryDocumentStore(DocumentStore):
    def __init__(self) -> None:
        super().__init__()
        self._data: dict[str, dict[str, Document]] = {}

    def _load_all(self) -> dict[str, dict[str, Document]]:
        return copy.deepcopy(self._data)

    def _save_all(self, data: dict[str, dict[str, Document]]) -> None:
        self._data = data


class YamlDocumentStore(DocumentStore):
    """Keeps every collection in one YAML file, rewritten atomically."""

    def __init__(self, path: str | Path) -> None:
        super().__init__()
        self.path = Path(path)

    def _load_all(self) -> dict[str, dict[str, Document]]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                payload = yaml.safe_load(handle)
        except (OSError, yaml.YAMLError) as exc:
            raise DocumentStoreError(f"Could not read '{self.path}': {exc}") from exc
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise DocumentStoreError(f"Expected YAML object in '{self.path}'.")
        return payload

    def _save_all(self, data: dict[str, dict[str, Document]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = self.path.with_name(f".{self.path.name}.{uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                yaml.safe_dump(data, handle, sort_keys=False)
            temp_path.replace(self.path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                temp_path.unlink(missing_ok=True)
            raise DocumentStoreError(f"Could not write '{self.path}': {exc}") from exc


def build_document_store(path: str | None) -> DocumentStore:
    if path:
        logger.info("document_store backend=yaml path=%s", path)
        return YamlDocumentStore(path)
    logger.info("document_store backend=memory")
    return InMemoryDocumentStore()
