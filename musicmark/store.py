"""
Persistent Store: one JSON document holding users, listens and counters.

The document is loaded once and kept in memory. Every mutation runs under a
single-writer lock against a working copy, the copy is flushed to disk as a
whole (``.tmp`` sibling + ``Path.replace()``), and only then published as the
committed document. Readers take ``snapshot()`` without the lock and always
see the last flushed state, never a half-applied change.

Usage:
    store = DocumentStore(Path("data/db.json"))
    store.load()
    new_id = store.mutate(lambda doc: doc.next_user_id())
    doc = store.snapshot()
    store.close()
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from .errors import StorageCorruption, StorageFailure
from .models import Document

T = TypeVar("T")


class Unchanged:
    """
    Returned from a ``mutate`` callback that decided not to change anything.

    The store then skips the flush and keeps the committed document;
    ``mutate`` returns ``value``.
    """

    __slots__ = ("value",)

    def __init__(self, value=None) -> None:
        self.value = value


class DocumentStore:
    """
    Owns the authoritative ``Document`` and its file on disk.

    Single process only: nothing guards the file against a second process
    writing to it.
    """

    def __init__(self, path: Path) -> None:
        self._path: Path = Path(path)
        self._doc: Optional[Document] = None
        self._lock = threading.Lock()  # single writer; readers never take it
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    @property
    def loaded(self) -> bool:
        return self._doc is not None and not self._closed

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> Document:
        """
        Read the document from disk, or create an empty one if the file is absent.

        Raises:
            StorageCorruption: the file exists but is not a valid document.
            StorageFailure:    the directory or file cannot be read/created.
        """
        with self._lock:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise StorageFailure(f"Cannot create data directory {self._path.parent}: {exc}") from exc

            if self._path.exists():
                doc = self._read()
                logger.info(
                    f"Store loaded from {self._path}: {len(doc.users)} users, "
                    f"{len(doc.listens)} listens"
                )
            else:
                doc = Document()
                self._flush(doc)
                logger.info(f"Store initialized at {self._path}")

            self._doc = doc
            self._closed = False
            return doc

    def close(self) -> None:
        """Release the in-memory document. Further calls raise until ``load()``."""
        with self._lock:
            self._doc = None
            self._closed = True
        logger.debug(f"Store closed: {self._path}")

    def __enter__(self) -> "DocumentStore":
        if not self.loaded:
            self.load()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def snapshot(self) -> Document:
        """Return the committed document. Callers must treat it as read-only."""
        doc = self._doc
        if doc is None:
            raise StorageFailure("Store is not loaded")
        return doc

    def mutate(
        self,
        fn: Callable[[Document], T],
        on_abort: Optional[Callable[[], None]] = None,
    ) -> T:
        """
        Apply ``fn`` to a working copy under the writer lock, flush, then commit.

        Args:
            fn:       Receives the working ``Document`` and may change it in place.
                      Its return value is passed back to the caller; an
                      ``Unchanged`` return skips the flush.
            on_abort: Called (still under the lock) when ``fn`` raises or the
                      flush fails, so callers can drop derived state.

        Returns:
            Whatever ``fn`` returned.
        """
        with self._lock:
            if self._doc is None:
                raise StorageFailure("Store is not loaded")
            working = self._doc.working_copy()
            try:
                result = fn(working)
                if isinstance(result, Unchanged):
                    return result.value
                self._flush(working)
            except BaseException:
                if on_abort is not None:
                    on_abort()
                raise
            self._doc = working
            return result

    # ------------------------------------------------------------------
    # Disk
    # ------------------------------------------------------------------

    def _read(self) -> Document:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            logger.error(f"Cannot read store file {self._path}: {exc}")
            raise StorageFailure(f"Cannot read {self._path}: {exc}") from exc
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("top-level value is not an object")
            return Document.model_validate(data)
        except (ValueError, PydanticValidationError) as exc:
            logger.error(f"Store file {self._path} is corrupt: {exc}")
            raise StorageCorruption(f"Cannot parse {self._path}: {exc}") from exc

    def _flush(self, doc: Document) -> None:
        """
        Atomically write the whole document.

        Writes to a ``.tmp`` sibling first, then uses ``Path.replace()`` so a
        crash mid-write leaves the previous file untouched.
        """
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        payload = doc.model_dump_json(indent=2)
        try:
            with tmp.open("w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            tmp.replace(self._path)
        except OSError as exc:
            logger.error(f"Flush to {self._path} failed: {exc}")
            tmp.unlink(missing_ok=True)
            raise StorageFailure(f"Cannot write {self._path}: {exc}") from exc
        logger.debug(
            f"Store flushed: {len(doc.users)} users, {len(doc.listens)} listens → {self._path}"
        )

    def __repr__(self) -> str:
        status = "loaded" if self.loaded else "not loaded"
        return f"DocumentStore({status}, path={self._path})"
