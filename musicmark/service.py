"""
MusicMark: the listen store and its analytics behind one owned instance.

Collaborators (the JSON API, the CLI, tests) create a ``MusicMark``, call
``open()`` once, use the operations below, and ``close()`` on shutdown.
There is no module-level store.

Usage:
    mm = MusicMark(Settings.from_env())
    mm.open()
    result = mm.insert_listen(user_id, {"title": "A", "artist": "B", "started_at": 1000})
    page   = mm.list_listens(user_id, limit=50, offset=0)
    mm.close()
"""

import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Tuple, Union

from loguru import logger

from .analytics import ListenAnalytics
from .config import Settings
from .identity import UserDirectory
from .ingestion import DedupIndex, ListenIngestor, ListenPayload
from .models import InsertResult, Listen, ListenPage, PublicUser, Role, Stats, TopSong
from .queries import ListenQueries
from .store import DocumentStore


class MusicMark:
    """Owns the ``DocumentStore`` and wires the components on top of it."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or Settings()
        self.store = DocumentStore(self.settings.db_path)
        index = DedupIndex()
        self.users = UserDirectory(self.store, bcrypt_rounds=self.settings.bcrypt_rounds)
        self.ingestor = ListenIngestor(self.store, index=index, clock=clock)
        self.queries = ListenQueries(self.store, index=index)
        self.analytics = ListenAnalytics(self.store, tz=self.settings.stats_timezone, clock=clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self, seed_admin: bool = True) -> "MusicMark":
        """Load the store (refusing a corrupt file) and seed the admin once."""
        self.store.load()
        if seed_admin:
            self.users.ensure_admin_seed(
                self.settings.admin_username, self.settings.admin_password
            )
        return self

    def close(self) -> None:
        self.ingestor.index.reset()
        self.store.close()
        logger.info("MusicMark closed")

    def __enter__(self) -> "MusicMark":
        if not self.store.loaded:
            self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Listens
    # ------------------------------------------------------------------

    def insert_listen(
        self, user_id: int, listen: Union[ListenPayload, Mapping[str, Any]]
    ) -> InsertResult:
        return self.ingestor.insert_listen(user_id, listen)

    def list_listens(self, user_id: int, limit: int, offset: int = 0) -> List[Listen]:
        return self.queries.list_listens(user_id, limit, offset)

    def list_all_listens(self, user_id: int) -> List[Listen]:
        return self.queries.list_all_listens(user_id)

    def count_listens(self, user_id: int) -> int:
        return self.queries.count_listens(user_id)

    def page_listens(self, user_id: int, page: int = 1, page_size: int = 50) -> ListenPage:
        return self.queries.page_listens(user_id, page, page_size)

    def delete_listens(self, user_id: int, id_list: Iterable[int]) -> int:
        return self.queries.delete_listens(user_id, id_list)

    # ------------------------------------------------------------------
    # Analytics
    # ------------------------------------------------------------------

    def get_stats(self, user_id: int) -> Stats:
        return self.analytics.get_stats(user_id)

    def get_top_songs(self, user_id: int, range: str = "all", limit: int = 50) -> List[TopSong]:
        return self.analytics.get_top_songs(user_id, range=range, limit=limit)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: str, role: Union[Role, str] = Role.USER) -> int:
        return self.users.create_user(username, password, role)

    def verify_password(self, username: str, password: str) -> PublicUser:
        return self.users.verify_password(username, password)

    def update_password(self, user_id: int, new_password: str) -> None:
        self.users.update_password(user_id, new_password)

    def reset_admin(self, username: str, password: str) -> Tuple[int, bool]:
        return self.users.reset_admin(username, password)

    def find_by_id(self, user_id: int) -> Optional[PublicUser]:
        return self.users.find_by_id(user_id)

    def find_by_username(self, username: str) -> Optional[PublicUser]:
        return self.users.find_by_username(username)

    def list_users(self) -> List[PublicUser]:
        return self.users.list_users()

    def __repr__(self) -> str:
        return f"MusicMark({self.store!r})"
