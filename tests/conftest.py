"""Shared fixtures: an isolated data directory and an opened MusicMark."""

import pytest

from musicmark.config import Settings
from musicmark.service import MusicMark

NOW = 1_700_000_000  # 2023-11-14T22:13:20Z


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def settings(tmp_path):
    return Settings(data_dir=tmp_path / "data", bcrypt_rounds=4)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mm(settings, clock):
    """Opened store; the seeded admin is user 1 ('admin' / 'admin123')."""
    instance = MusicMark(settings, clock=clock).open()
    yield instance
    instance.close()


@pytest.fixture
def alice(mm):
    return mm.create_user("alice", "alice-pw")


@pytest.fixture
def bob(mm):
    return mm.create_user("bob", "bob-pw")
