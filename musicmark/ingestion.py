"""
Listen Ingestion: dedup-and-insert for play events.

A listen is a duplicate when the same user already has one with the same
(title, artist-or-empty, album-or-empty, started_at). Duplicates resolve to
the existing row instead of adding a new one.

The check runs against ``DedupIndex``, a per-user hash index kept beside the
document. It is only read or written inside ``DocumentStore.mutate`` (under
the writer lock) and is dropped whenever a mutation aborts, so it can never
disagree with the committed document.
"""

import math
import time
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import NotFound, ValidationError
from .models import Document, InsertResult, Listen, dedup_key
from .store import DocumentStore, Unchanged

DedupKey = Tuple[str, str, str, int]

# exclusive bounds, so a date shifted into any stats timezone stays representable
_MIN_YEAR = 1
_MAX_YEAR = 9999


# ---------------------------------------------------------------------------
# started_at parsing
# ---------------------------------------------------------------------------

def _in_range(seconds: int) -> int:
    try:
        moment = datetime.fromtimestamp(seconds, timezone.utc)
    except (OverflowError, OSError, ValueError):
        raise ValueError(f"started_at {seconds} is out of range") from None
    if not _MIN_YEAR < moment.year < _MAX_YEAR:
        raise ValueError(f"started_at {seconds} is out of range")
    return seconds


def parse_started_at(value: Any) -> int:
    """
    Normalize a play start time to integer epoch seconds.

    Accepts an int/float epoch (floored), a string of digits (epoch seconds),
    or an ISO-8601 date / datetime string. Strings without an offset are read
    as UTC. Times outside years 2..9998 are rejected, which also catches
    millisecond epochs.

    Raises:
        ValueError: the value cannot be interpreted as a point in time.
    """
    if isinstance(value, bool):
        raise ValueError("started_at must be a number or a date string")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError("started_at must be finite")
        return _in_range(math.floor(value))
    if isinstance(value, str):
        text = value.strip()
        if not text:
            raise ValueError("started_at is empty")
        if text.lstrip("-").isdigit():
            return _in_range(int(text))
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise ValueError(f"started_at cannot be parsed: {value!r}") from None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        try:
            seconds = math.floor(parsed.timestamp())
        except (OverflowError, ValueError):
            raise ValueError(f"started_at {value!r} is out of range") from None
        return _in_range(seconds)
    raise ValueError("started_at must be a number or a date string")


# ---------------------------------------------------------------------------
# Payload
# ---------------------------------------------------------------------------

class ListenPayload(BaseModel):
    """
    A validated, normalized listen as handed to ``insert_listen``.

    Optional text fields have one "absent" form: ``None``. Empty strings and
    nulls both normalize to it before the dedup key is built.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    title: str = Field(..., min_length=1, description="Song title")
    artist: Optional[str] = Field(None, description="Artist name")
    album: Optional[str] = Field(None, description="Album name")
    source: Optional[str] = Field(None, description="Reporting source label")
    started_at: int = Field(..., description="Play start, epoch seconds")
    duration_sec: Optional[int] = Field(None, gt=0, strict=True, description="Play length in seconds")
    external_id: Optional[str] = Field(None, description="Client-side identifier")

    @field_validator("artist", "album", "source", "external_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        return value

    @field_validator("started_at", mode="before")
    @classmethod
    def _normalize_started_at(cls, value: Any) -> int:
        return parse_started_at(value)

    @classmethod
    def parse(cls, data: Mapping[str, Any]) -> "ListenPayload":
        """Validate a raw mapping, raising ``ValidationError`` with per-field details."""
        try:
            return cls.model_validate(data)
        except PydanticValidationError as exc:
            details = [
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ]
            raise ValidationError("Invalid listen payload", details=details) from exc

    def dedup_key(self) -> DedupKey:
        return dedup_key(self.title, self.artist, self.album, self.started_at)


# ---------------------------------------------------------------------------
# Dedup index
# ---------------------------------------------------------------------------

class DedupIndex:
    """
    ``{user_id: {dedup_key: listen_id}}`` over the committed listens.

    Built lazily from the working document the first time a writer needs it.
    Every method must be called while the store's writer lock is held.
    """

    def __init__(self) -> None:
        self._by_user: Optional[Dict[int, Dict[DedupKey, int]]] = None

    def ensure(self, doc: Document) -> None:
        if self._by_user is not None:
            return
        by_user: Dict[int, Dict[DedupKey, int]] = defaultdict(dict)
        for listen in doc.listens:
            by_user[listen.user_id].setdefault(listen.dedup_key(), listen.id)
        self._by_user = by_user
        logger.debug(f"Dedup index built: {len(doc.listens)} listens, {len(by_user)} users")

    def get(self, user_id: int, key: DedupKey) -> Optional[int]:
        if self._by_user is None:
            return None
        return self._by_user.get(user_id, {}).get(key)

    def add(self, listen: Listen) -> None:
        if self._by_user is not None:
            self._by_user[listen.user_id][listen.dedup_key()] = listen.id

    def discard(self, listen: Listen) -> None:
        if self._by_user is None:
            return
        keys = self._by_user.get(listen.user_id)
        if keys is not None and keys.get(listen.dedup_key()) == listen.id:
            del keys[listen.dedup_key()]

    def reset(self) -> None:
        self._by_user = None

    @property
    def built(self) -> bool:
        return self._by_user is not None


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------

class ListenIngestor:
    """Inserts listens, resolving natural-key duplicates to the existing row."""

    def __init__(
        self,
        store: DocumentStore,
        index: Optional[DedupIndex] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.index = index or DedupIndex()
        self.clock = clock

    def insert_listen(
        self, user_id: int, attrs: Union[ListenPayload, Mapping[str, Any]]
    ) -> InsertResult:
        """
        Store a listen for ``user_id`` unless it duplicates an existing one.

        Args:
            user_id: Owner of the listen; must exist.
            attrs:   A ``ListenPayload`` or a raw mapping validated into one.

        Returns:
            ``InsertResult(id, duplicate)``. On a duplicate, ``id`` is the
            existing listen's id and nothing was written.

        Raises:
            ValidationError: ``attrs`` failed validation.
            NotFound:        no such user.
        """
        payload = attrs if isinstance(attrs, ListenPayload) else ListenPayload.parse(attrs)
        user_id = int(user_id)
        key = payload.dedup_key()

        def _apply(doc: Document):
            if not any(u.id == user_id for u in doc.users):
                raise NotFound(f"User {user_id} not found")
            self.index.ensure(doc)
            existing = self.index.get(user_id, key)
            if existing is not None:
                return Unchanged(InsertResult(id=existing, duplicate=True))

            listen = Listen(
                id=doc.next_listen_id(),
                user_id=user_id,
                created_at=int(self.clock()),
                **payload.model_dump(),
            )
            doc.listens.append(listen)
            self.index.add(listen)
            return InsertResult(id=listen.id, duplicate=False)

        result = self.store.mutate(_apply, on_abort=self.index.reset)
        if result.duplicate:
            logger.debug(f"Duplicate listen for user {user_id}: {payload.title!r} → id={result.id}")
        else:
            logger.debug(f"Stored listen id={result.id} for user {user_id}: {payload.title!r}")
        return result
