"""
Query Engine: ordered listing, counts and deletion of a user's listens.

Listings are newest first (``started_at`` descending) with the listen id as a
descending tie-break, so paging over an unchanged history is stable.
"""

from typing import Iterable, List, Optional

from loguru import logger

from .errors import ValidationError
from .ingestion import DedupIndex
from .models import Document, Listen, ListenPage
from .store import DocumentStore, Unchanged

MAX_PAGE_SIZE = 200
DEFAULT_PAGE_SIZE = 50


def _newest_first(listens: Iterable[Listen]) -> List[Listen]:
    return sorted(listens, key=lambda l: (l.started_at, l.id), reverse=True)


def _owned_by(doc: Document, user_id: int) -> List[Listen]:
    return [l for l in doc.listens if l.user_id == user_id]


class ListenQueries:
    """Read and delete operations over the committed document."""

    def __init__(self, store: DocumentStore, index: Optional[DedupIndex] = None) -> None:
        self.store = store
        self.index = index

    def list_listens(self, user_id: int, limit: int, offset: int = 0) -> List[Listen]:
        """Return ``[offset, offset + limit)`` of the user's listens, newest first."""
        try:
            limit, offset = int(limit), int(offset)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"limit and offset must be integers: {exc}") from exc
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        if offset < 0:
            raise ValidationError("offset must not be negative")
        rows = _newest_first(_owned_by(self.store.snapshot(), int(user_id)))
        return rows[offset:offset + limit]

    def list_all_listens(self, user_id: int) -> List[Listen]:
        return _newest_first(_owned_by(self.store.snapshot(), int(user_id)))

    def count_listens(self, user_id: int) -> int:
        user_id = int(user_id)
        return sum(1 for l in self.store.snapshot().listens if l.user_id == user_id)

    def page_listens(
        self, user_id: int, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> ListenPage:
        """
        One page of history plus the total, read from a single snapshot.

        ``page_size`` is clamped to [1, 200] and ``page`` to >= 1.
        """
        try:
            page_size = min(max(int(page_size), 1), MAX_PAGE_SIZE)
            page = max(int(page), 1)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"page and page size must be integers: {exc}") from exc
        rows = _newest_first(_owned_by(self.store.snapshot(), int(user_id)))
        offset = (page - 1) * page_size
        return ListenPage(
            page=page,
            limit=page_size,
            total=len(rows),
            items=rows[offset:offset + page_size],
        )

    def delete_listens(self, user_id: int, ids: Iterable[int]) -> int:
        """
        Remove the user's listens whose id is in ``ids``.

        Ids that do not exist or belong to someone else are skipped. The whole
        batch is one flush; nothing is written when nothing matched.

        Returns:
            Number of listens removed.
        """
        user_id = int(user_id)
        try:
            wanted = {int(i) for i in ids}
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"Listen ids must be integers: {exc}") from exc
        if not wanted:
            return 0

        def _apply(doc: Document):
            kept: List[Listen] = []
            removed: List[Listen] = []
            for listen in doc.listens:
                if listen.user_id == user_id and listen.id in wanted:
                    removed.append(listen)
                else:
                    kept.append(listen)
            if not removed:
                return Unchanged(0)
            doc.listens = kept
            if self.index is not None:
                for listen in removed:
                    self.index.discard(listen)
            return len(removed)

        on_abort = self.index.reset if self.index is not None else None
        count = self.store.mutate(_apply, on_abort=on_abort)
        logger.debug(f"Deleted {count} of {len(wanted)} requested listens for user {user_id}")
        return count
