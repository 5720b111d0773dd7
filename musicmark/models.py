"""
Data Models for MusicMark

Users, listens and the sequence counters that make up the persisted
document, plus the result types returned by ingestion, queries and analytics.
"""

from enum import Enum
from typing import Optional, List, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class User(BaseModel):
    """Stored user record, including the password hash."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: int = Field(..., description="Unique user identifier from seq.users")
    username: str = Field(..., description="Login name, unique across users")
    password_hash: str = Field(..., description="bcrypt hash of the password")
    role: Role = Field(Role.USER, description="user or admin")
    created_at: int = Field(..., description="Creation time in epoch seconds")

    def public(self) -> "PublicUser":
        return PublicUser(
            id=self.id,
            username=self.username,
            role=self.role,
            created_at=self.created_at,
        )


class PublicUser(BaseModel):
    """User fields that are safe to hand to collaborators (never the hash)."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    role: Role
    created_at: int


class Listen(BaseModel):
    """One recorded play event. Immutable once stored."""

    model_config = ConfigDict(frozen=True, extra="allow")

    id: int = Field(..., description="Unique listen identifier from seq.listens")
    user_id: int = Field(..., description="Owning user id")
    title: str = Field(..., description="Song title")
    artist: Optional[str] = Field(None, description="Artist name")
    album: Optional[str] = Field(None, description="Album name")
    source: Optional[str] = Field(None, description="Where the play came from (e.g. 'watch')")
    started_at: int = Field(..., description="Play start in epoch seconds")
    duration_sec: Optional[int] = Field(None, gt=0, description="Play length in seconds")
    external_id: Optional[str] = Field(None, description="Identifier in the reporting client")
    created_at: int = Field(..., description="Time the listen was stored, epoch seconds")

    def dedup_key(self) -> Tuple[str, str, str, int]:
        return dedup_key(self.title, self.artist, self.album, self.started_at)

    def song_key(self) -> Tuple[str, str, str]:
        return (self.title, self.artist or "", self.album or "")


def dedup_key(
    title: str, artist: Optional[str], album: Optional[str], started_at: int
) -> Tuple[str, str, str, int]:
    """Natural key of a listen within one user's history."""
    return (title, artist or "", album or "", started_at)


class SeqCounters(BaseModel):
    """Monotonic id counters; the last id handed out per collection."""

    model_config = ConfigDict(frozen=True, extra="allow")

    users: int = 0
    listens: int = 0


class Document(BaseModel):
    """
    The whole persisted store: ``users``, ``listens`` and ``seq``.

    Rows are frozen, so a committed document can be shared with readers while
    a writer works on a copy with fresh lists (see ``working_copy``).
    """

    model_config = ConfigDict(extra="allow")

    users: List[User] = Field(default_factory=list)
    listens: List[Listen] = Field(default_factory=list)
    seq: SeqCounters = Field(default_factory=SeqCounters)

    def working_copy(self) -> "Document":
        return self.model_copy(
            update={"users": list(self.users), "listens": list(self.listens)}
        )

    def next_user_id(self) -> int:
        self.seq = self.seq.model_copy(update={"users": self.seq.users + 1})
        return self.seq.users

    def next_listen_id(self) -> int:
        self.seq = self.seq.model_copy(update={"listens": self.seq.listens + 1})
        return self.seq.listens


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class InsertResult(BaseModel):
    """Outcome of ``insert_listen``: the stored id and whether it already existed."""

    id: int
    duplicate: bool = False


class ListenPage(BaseModel):
    """One page of a user's history, as served to the dashboard and API."""

    page: int = Field(..., ge=1)
    limit: int = Field(..., ge=1)
    total: int = Field(..., ge=0)
    items: List[Listen] = Field(default_factory=list)


class DailyStat(BaseModel):
    date: str = Field(..., description="Calendar date YYYY-MM-DD in the stats timezone")
    count: int = 0
    duration_sec: int = 0
    unique_titles: int = 0


class SourceStat(BaseModel):
    name: str
    count: int = 0


class Stats(BaseModel):
    """Aggregate listening statistics for one user."""

    total_count: int = 0
    total_duration_sec: int = 0
    unique_titles: int = 0
    daily: List[DailyStat] = Field(default_factory=list)
    sources: List[SourceStat] = Field(default_factory=list)


class TopSong(BaseModel):
    """A ranked song: play count plus the most recent play."""

    title: str
    artist: str = ""
    album: str = ""
    count: int = 0
    last_play: int = 0
