"""Tests for listen ingestion: dedup, normalization and id allocation."""

import threading
from pathlib import Path

import pytest

from musicmark.errors import NotFound, StorageFailure, ValidationError
from musicmark.ingestion import ListenPayload, parse_started_at
from musicmark.service import MusicMark


def make_listen(title="Song", artist="Artist", album=None, started_at=1000, **extra):
    data = {"title": title, "artist": artist, "album": album, "started_at": started_at}
    data.update(extra)
    return data


# ---------------------------------------------------------------------------
# Dedup
# ---------------------------------------------------------------------------

class TestDedup:
    def test_worked_example(self, mm):
        # user 1 is the seeded admin
        first = mm.insert_listen(1, {"title": "A", "artist": "B", "started_at": 1000})
        second = mm.insert_listen(1, {"title": "A", "artist": "B", "started_at": 1000})
        assert (first.id, first.duplicate) == (1, False)
        assert (second.id, second.duplicate) == (1, True)
        assert mm.count_listens(1) == 1

    def test_duplicate_does_not_flush(self, mm, alice, monkeypatch):
        mm.insert_listen(alice, make_listen())
        flushed = []
        monkeypatch.setattr(mm.store, "_flush", lambda doc: flushed.append(doc))
        assert mm.insert_listen(alice, make_listen()).duplicate is True
        assert flushed == []
        assert mm.store.snapshot().seq.listens == 1

    def test_missing_and_empty_optionals_are_the_same_key(self, mm, alice):
        first = mm.insert_listen(alice, {"title": "T", "started_at": 5})
        again = mm.insert_listen(alice, {"title": "T", "artist": "", "album": None, "started_at": 5})
        assert again.duplicate is True
        assert again.id == first.id

    @pytest.mark.parametrize("change", [
        {"title": "Other"},
        {"artist": "Other"},
        {"album": "Other"},
        {"started_at": 1001},
    ])
    def test_any_key_field_change_is_a_new_row(self, mm, alice, change):
        mm.insert_listen(alice, make_listen())
        result = mm.insert_listen(alice, make_listen(**change))
        assert result.duplicate is False
        assert mm.count_listens(alice) == 2

    def test_non_key_fields_do_not_matter(self, mm, alice):
        mm.insert_listen(alice, make_listen(source="watch", duration_sec=200))
        result = mm.insert_listen(alice, make_listen(source="web", duration_sec=10, external_id="x"))
        assert result.duplicate is True

    def test_key_is_case_sensitive(self, mm, alice):
        mm.insert_listen(alice, make_listen(title="song"))
        assert mm.insert_listen(alice, make_listen(title="Song")).duplicate is False

    def test_dedup_is_per_user(self, mm, alice, bob):
        a = mm.insert_listen(alice, make_listen())
        b = mm.insert_listen(bob, make_listen())
        assert b.duplicate is False
        assert a.id != b.id

    def test_iso_and_epoch_forms_collide(self, mm, alice):
        mm.insert_listen(alice, make_listen(started_at=1_700_000_000))
        result = mm.insert_listen(alice, make_listen(started_at="2023-11-14T22:13:20Z"))
        assert result.duplicate is True

    def test_dedup_survives_reopen(self, mm, alice, settings, clock):
        first = mm.insert_listen(alice, make_listen())
        mm.close()
        again = MusicMark(settings, clock=clock).open()
        try:
            result = again.insert_listen(alice, make_listen())
            assert (result.id, result.duplicate) == (first.id, True)
        finally:
            again.close()

    def test_concurrent_identical_inserts_store_one_row(self, mm, alice):
        results = []

        def worker():
            results.append(mm.insert_listen(alice, make_listen()))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert mm.count_listens(alice) == 1
        assert sum(1 for r in results if not r.duplicate) == 1
        assert len({r.id for r in results}) == 1


# ---------------------------------------------------------------------------
# Stored record
# ---------------------------------------------------------------------------

class TestStoredRecord:
    def test_fields_and_created_at(self, mm, alice, clock):
        result = mm.insert_listen(alice, make_listen(
            album="LP", source="watch", duration_sec=215, external_id="ext-1",
        ))
        listen = mm.list_all_listens(alice)[0]
        assert listen.id == result.id
        assert listen.user_id == alice
        assert (listen.title, listen.artist, listen.album) == ("Song", "Artist", "LP")
        assert (listen.source, listen.duration_sec, listen.external_id) == ("watch", 215, "ext-1")
        assert listen.started_at == 1000
        assert listen.created_at == clock.now

    def test_empty_optionals_stored_as_none(self, mm, alice):
        mm.insert_listen(alice, {"title": "T", "artist": "", "source": "", "started_at": 1})
        listen = mm.list_all_listens(alice)[0]
        assert listen.artist is None
        assert listen.source is None

    def test_ids_are_never_reused(self, mm, alice):
        first = mm.insert_listen(alice, make_listen(started_at=1)).id
        second = mm.insert_listen(alice, make_listen(started_at=2)).id
        mm.delete_listens(alice, [second])
        third = mm.insert_listen(alice, make_listen(started_at=3)).id
        assert (first, second, third) == (1, 2, 3)

    def test_reinsert_after_delete_is_new(self, mm, alice):
        old = mm.insert_listen(alice, make_listen())
        assert mm.delete_listens(alice, [old.id]) == 1
        again = mm.insert_listen(alice, make_listen())
        assert again.duplicate is False
        assert again.id != old.id

    def test_unknown_user(self, mm):
        with pytest.raises(NotFound):
            mm.insert_listen(42, make_listen())
        assert mm.store.snapshot().seq.listens == 0

    def test_failed_flush_leaves_no_phantom_duplicate(self, mm, alice, monkeypatch):
        mm.insert_listen(alice, make_listen(started_at=1))

        def fail_replace(self, target):
            raise OSError("disk full")

        with monkeypatch.context() as patch:
            patch.setattr(Path, "replace", fail_replace)
            with pytest.raises(StorageFailure):
                mm.insert_listen(alice, make_listen(started_at=2))

        result = mm.insert_listen(alice, make_listen(started_at=2))
        assert result.duplicate is False
        assert mm.count_listens(alice) == 2


# ---------------------------------------------------------------------------
# Validation boundary
# ---------------------------------------------------------------------------

class TestListenPayload:
    def test_title_required(self):
        with pytest.raises(ValidationError) as err:
            ListenPayload.parse({"started_at": 1})
        assert any(d["field"] == "title" for d in err.value.details)

    def test_empty_title_rejected(self):
        with pytest.raises(ValidationError):
            ListenPayload.parse({"title": "", "started_at": 1})

    @pytest.mark.parametrize("duration", [0, -5])
    def test_duration_must_be_positive(self, duration):
        with pytest.raises(ValidationError):
            ListenPayload.parse({"title": "T", "started_at": 1, "duration_sec": duration})

    @pytest.mark.parametrize("duration", [True, "120", 120.5, 120.0])
    def test_duration_must_be_a_real_integer(self, duration):
        with pytest.raises(ValidationError) as err:
            ListenPayload.parse({"title": "T", "started_at": 1, "duration_sec": duration})
        assert any(d["field"] == "duration_sec" for d in err.value.details)

    def test_started_at_required(self):
        with pytest.raises(ValidationError):
            ListenPayload.parse({"title": "T"})

    def test_unparseable_started_at(self):
        with pytest.raises(ValidationError) as err:
            ListenPayload.parse({"title": "T", "started_at": "yesterday-ish"})
        assert any(d["field"] == "started_at" for d in err.value.details)

    def test_millisecond_epoch_rejected(self):
        with pytest.raises(ValidationError) as err:
            ListenPayload.parse({"title": "T", "started_at": 1_700_000_000_000})
        assert any(d["field"] == "started_at" for d in err.value.details)

    def test_out_of_range_insert_leaves_stats_working(self, mm, alice):
        with pytest.raises(ValidationError):
            mm.insert_listen(alice, {"title": "T", "started_at": 1_700_000_000_000})
        mm.insert_listen(alice, {"title": "T", "started_at": 1_700_000_000})
        assert mm.get_stats(alice).total_count == 1

    def test_insert_validates_raw_mappings(self, mm, alice):
        with pytest.raises(ValidationError):
            mm.insert_listen(alice, {"artist": "no title", "started_at": 1})
        assert mm.count_listens(alice) == 0

    def test_unknown_fields_are_ignored(self):
        payload = ListenPayload.parse({"title": "T", "started_at": 1, "mood": "happy"})
        assert "mood" not in payload.model_dump()


class TestParseStartedAt:
    @pytest.mark.parametrize("value,expected", [
        (1000, 1000),
        (1000.9, 1000),
        (-1.5, -2),
        ("1700000000", 1_700_000_000),
        ("2023-11-14T22:13:20Z", 1_700_000_000),
        ("2023-11-14T22:13:20+00:00", 1_700_000_000),
        ("2023-11-15T06:13:20+08:00", 1_700_000_000),
        ("2023-11-14T22:13:20", 1_700_000_000),
        ("2023-11-14", 1_699_920_000),
        ("2023-11-14T22:13:20.750Z", 1_700_000_000),
    ])
    def test_accepted_forms(self, value, expected):
        assert parse_started_at(value) == expected

    @pytest.mark.parametrize("value", [
        1_700_000_000_000,
        "1700000000000",
        10 ** 30,
        1e30,
        "9999-12-31T23:00:00Z",
        "0001-01-01T00:00:00+14:00",
    ])
    def test_out_of_range(self, value):
        with pytest.raises(ValueError, match="out of range"):
            parse_started_at(value)

    @pytest.mark.parametrize("value", ["", "  ", "not a date", None, True, float("nan"), [1]])
    def test_rejected_forms(self, value):
        with pytest.raises(ValueError):
            parse_started_at(value)
