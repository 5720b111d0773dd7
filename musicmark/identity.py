"""
Identity Table: user records layered on the DocumentStore.

Passwords are stored as salted bcrypt hashes. Lookups return ``PublicUser``
so the hash never leaves this module.
"""

import time
from typing import List, Optional, Tuple

import bcrypt
from loguru import logger

from .errors import DuplicateKey, NotFound, Unauthorized, ValidationError
from .models import Document, PublicUser, Role, User
from .store import DocumentStore, Unchanged

# bcrypt ignores (or rejects, in newer releases) anything past 72 bytes
_BCRYPT_MAX_BYTES = 72
MIN_RESET_PASSWORD_LENGTH = 3


def _check_password(password: str) -> bytes:
    if not isinstance(password, str) or not password:
        raise ValidationError("Password is required")
    encoded = password.encode("utf-8")
    if len(encoded) > _BCRYPT_MAX_BYTES:
        raise ValidationError(f"Password must be at most {_BCRYPT_MAX_BYTES} bytes")
    return encoded


def _check_username(username: str) -> str:
    if not isinstance(username, str) or not username.strip():
        raise ValidationError("Username is required")
    return username


def _check_role(role) -> Role:
    try:
        return Role(role)
    except ValueError:
        raise ValidationError(f"Unknown role {role!r}; expected 'user' or 'admin'") from None


class UserDirectory:
    """Create, authenticate and look up users."""

    def __init__(self, store: DocumentStore, bcrypt_rounds: int = 10) -> None:
        self.store = store
        self.bcrypt_rounds = bcrypt_rounds
        # verify_password checks unknown users against this so both failure
        # paths cost one bcrypt comparison
        self._dummy_hash: Optional[bytes] = None

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    def _hash(self, encoded: bytes) -> str:
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.bcrypt_rounds)).decode("ascii")

    def _dummy(self) -> bytes:
        if self._dummy_hash is None:
            self._dummy_hash = bcrypt.hashpw(b"musicmark", bcrypt.gensalt(rounds=self.bcrypt_rounds))
        return self._dummy_hash

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, username: str, password: str, role: Role | str = Role.USER) -> int:
        """
        Add a user and return its id.

        Raises:
            ValidationError: empty username/password or unknown role.
            DuplicateKey:    the username is taken.
        """
        username = _check_username(username)
        role = _check_role(role)
        password_hash = self._hash(_check_password(password))

        def _apply(doc: Document) -> int:
            return self._append_user(doc, username, password_hash, role)

        user_id = self.store.mutate(_apply)
        logger.info(f"Created user {username!r} (id={user_id}, role={role.value})")
        return user_id

    @staticmethod
    def _append_user(doc: Document, username: str, password_hash: str, role: Role) -> int:
        if any(u.username == username for u in doc.users):
            raise DuplicateKey(f"Username {username!r} already exists")
        user_id = doc.next_user_id()
        doc.users.append(User(
            id=user_id,
            username=username,
            password_hash=password_hash,
            role=role,
            created_at=int(time.time()),
        ))
        return user_id

    def update_password(self, user_id: int, new_password: str) -> None:
        """Replace a user's password hash. Raises ``NotFound`` for an unknown id."""
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            raise NotFound(f"User {user_id!r} not found") from None
        password_hash = self._hash(_check_password(new_password))

        def _apply(doc: Document) -> None:
            for i, u in enumerate(doc.users):
                if u.id == user_id:
                    doc.users[i] = u.model_copy(update={"password_hash": password_hash})
                    return
            raise NotFound(f"User {user_id} not found")

        self.store.mutate(_apply)
        logger.info(f"Password updated for user id={user_id}")

    def ensure_admin_seed(self, username: str = "admin", password: str = "admin123") -> Optional[int]:
        """
        Create the bootstrap admin if the store has no admin yet.

        The check and the insert happen in one mutation, so concurrent callers
        cannot both seed. Returns the new admin id, or None if one existed.
        """
        if any(u.role == Role.ADMIN for u in self.store.snapshot().users):
            return None
        username = _check_username(username)
        password_hash = self._hash(_check_password(password))

        def _apply(doc: Document) -> Optional[int]:
            if any(u.role == Role.ADMIN for u in doc.users):
                return Unchanged(None)
            return self._append_user(doc, username, password_hash, Role.ADMIN)

        user_id = self.store.mutate(_apply)
        if user_id is not None:
            logger.warning(f"Seeded admin user {username!r}; change its password soon")
        return user_id

    def reset_admin(self, username: str, password: str) -> Tuple[int, bool]:
        """
        Reset ``username``'s password, creating it as an admin when absent.

        Returns:
            (user_id, created); ``created`` is True when a new admin was added.
        """
        if not isinstance(password, str) or len(password) < MIN_RESET_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_RESET_PASSWORD_LENGTH} characters"
            )
        existing = self.find_by_username(username)
        if existing is None:
            return self.create_user(username, password, Role.ADMIN), True
        self.update_password(existing.id, password)
        return existing.id, False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def verify_password(self, username: str, password: str) -> PublicUser:
        """Return the user's public fields, or raise ``Unauthorized``."""
        user = self._lookup(username)
        try:
            encoded = password.encode("utf-8")
        except AttributeError:
            raise Unauthorized() from None
        if len(encoded) > _BCRYPT_MAX_BYTES:
            raise Unauthorized()
        if user is None:
            bcrypt.checkpw(encoded, self._dummy())
            raise Unauthorized()
        if not bcrypt.checkpw(encoded, user.password_hash.encode("ascii")):
            raise Unauthorized()
        return user.public()

    def _lookup(self, username: str) -> Optional[User]:
        for u in self.store.snapshot().users:
            if u.username == username:
                return u
        return None

    def find_by_username(self, username: str) -> Optional[PublicUser]:
        user = self._lookup(username)
        return user.public() if user else None

    def find_by_id(self, user_id: int) -> Optional[PublicUser]:
        try:
            user_id = int(user_id)
        except (TypeError, ValueError):
            return None
        for u in self.store.snapshot().users:
            if u.id == user_id:
                return u.public()
        return None

    def list_users(self) -> List[PublicUser]:
        return [u.public() for u in sorted(self.store.snapshot().users, key=lambda u: u.id)]
