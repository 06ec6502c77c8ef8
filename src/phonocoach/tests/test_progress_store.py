"""Tests for the progress store."""
from dataclasses import replace
from datetime import timedelta
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.orm import Session, sessionmaker

from phonocoach.errors import Busy, InvalidInput, VersionConflict
from phonocoach.models.base import utcnow
from phonocoach.models.models import HistoryEntry, InFlightRequest
from phonocoach.models.progress_models import DifficultyLevel, HistoryRecord, WordItem
from phonocoach.services import progression
from phonocoach.services.alignment import diagnose
from phonocoach.services.progress_store import ProgressStore


@pytest.fixture
def store(db: Session) -> ProgressStore:
    return ProgressStore(db)


@pytest.fixture
def created(store: ProgressStore, learner_id: str):
    return store.create(progression.new_progress(learner_id, "en"))


def test_create_and_read(store, created, learner_id):
    """Test that a new learner is stored at version 0."""
    progress = store.read(learner_id)

    assert progress == created
    assert progress.version == 0
    assert progress.calibration_index == 1


def test_read_unknown_learner(store):
    """Test that reading an unknown learner is an input error."""
    assert store.get("nobody") is None
    with pytest.raises(InvalidInput):
        store.read("nobody")


def test_create_twice_conflicts(store, created, learner_id):
    """Test that a learner can only be created once."""
    with pytest.raises(VersionConflict):
        store.create(progression.new_progress(learner_id, "en"))


def test_progress_is_kept_per_language(store, created, learner_id):
    """Test that a second language gets its own progress and becomes active."""
    chinese = store.create(progression.new_progress(learner_id, "zh"))

    assert chinese.version == 0
    assert store.read(learner_id) == chinese
    assert store.read(learner_id, "en") == created

    assert store.set_active_language(learner_id, "en") == created
    assert store.read(learner_id) == created
    with pytest.raises(InvalidInput):
        store.set_active_language(learner_id, "fr")


def test_history_by_language(store, created, learner_id):
    chinese = store.create(progression.new_progress(learner_id, "zh"))
    store.append_history(learner_id, HistoryRecord(action="start", snapshot=created.to_data()))
    store.append_history(learner_id, HistoryRecord(action="start", snapshot=chinese.to_data()))

    assert len(store.list_history(learner_id)) == 2
    assert [entry.snapshot["language"] for entry in store.list_history(learner_id, language="zh")] == ["zh"]

def test_write_bumps_version(store, created, learner_id):
    """Test that a write at the expected version stores the new state."""
    word = WordItem(text="cat", transcriptions=("kæt",), band=DifficultyLevel.KINDERGARTEN)

    stored = store.write(learner_id, replace(created, cur_word=word), expected_version=0)

    assert stored.version == 1
    assert stored.cur_word == word


def test_stale_write_conflicts(store, created, learner_id):
    """Test optimistic concurrency on writes."""
    store.write(learner_id, created, expected_version=0)

    with pytest.raises(VersionConflict):
        store.write(learner_id, created, expected_version=0)
    assert store.read(learner_id).version == 1


def test_commit_records_history_and_phoneme_stats(store, created, learner_id):
    """Test that progress, history and statistics are written together."""
    diagnosis = diagnose(["θri"], "sri")
    _, updated = progression.apply_submission(created, diagnosis)

    stored = store.commit(
        learner_id,
        updated,
        created.version,
        HistoryRecord(action="continue", snapshot=created.to_data(), diagnosis=diagnosis, idempotency_key="k1"),
    )

    assert stored.calibration_index == 2
    history = store.list_history(learner_id)
    assert len(history) == 1
    assert history[0].snapshot["calibration_index"] == 1
    assert history[0].diagnosis == diagnosis
    assert store.phoneme_summary(learner_id, "en") == [("θ", 1)]


def test_failed_commit_leaves_nothing_behind(store, created, learner_id, db):
    """Test that a version conflict rolls back the history entry too."""
    store.write(learner_id, created, expected_version=0)

    with pytest.raises(VersionConflict):
        store.commit(
            learner_id,
            created,
            0,
            HistoryRecord(action="continue", snapshot=created.to_data(), diagnosis=diagnose(["kæt"], "kɛt")),
        )

    assert db.query(HistoryEntry).count() == 0
    assert store.phoneme_summary(learner_id, "en") == []


def test_find_submission(store, created, learner_id):
    """Test lookup of a recorded idempotency key."""
    diagnosis = diagnose(["kæt"], "kæt")
    store.commit(
        learner_id,
        created,
        0,
        HistoryRecord(action="continue", snapshot=created.to_data(), diagnosis=diagnosis, idempotency_key="k1"),
    )

    found = store.find_submission(learner_id, "k1")
    assert found.diagnosis == diagnosis
    assert store.find_submission(learner_id, "k2") is None


def test_history_is_newest_first(store, created, learner_id):
    """Test history ordering and limit."""
    progress = created
    for action in ("start", "select_word", "skip"):
        progress = store.commit(learner_id, progress, progress.version,
                                HistoryRecord(action=action, snapshot=progress.to_data()))

    assert [entry.action for entry in store.list_history(learner_id)] == ["skip", "select_word", "start"]
    assert [entry.action for entry in store.list_history(learner_id, limit=1)] == ["skip"]


def test_phoneme_summary_orders_by_amount(store, created, learner_id):
    """Test that the most missed phonemes come first."""
    progress = created
    for recognized in ("sri", "sri", "θrɪ"):
        diagnosis = diagnose(["θri"], recognized)
        progress = store.commit(learner_id, progress, progress.version,
                                HistoryRecord(action="repeat", snapshot=progress.to_data(), diagnosis=diagnosis))

    assert store.phoneme_summary(learner_id, "en") == [("θ", 2), ("i", 1)]
    assert store.phoneme_summary(learner_id, "en", limit=1) == [("θ", 2)]


def test_lease_is_exclusive(store, learner_id, engine):
    """Test that a second lease holder gets Busy until the first releases."""
    other = ProgressStore(sessionmaker(bind=engine)())
    token = store.acquire_lease(learner_id, ttl_seconds=60)

    with pytest.raises(Busy):
        other.acquire_lease(learner_id, ttl_seconds=60)

    store.release_lease(learner_id, token)
    assert other.acquire_lease(learner_id, ttl_seconds=60)


def test_lost_lease_insert_race_is_busy(store, learner_id, engine):
    """Test that a second session which read no lease still gets Busy on insert."""
    other = ProgressStore(sessionmaker(bind=engine)())
    store.acquire_lease(learner_id, ttl_seconds=60)

    no_lease = Mock()
    no_lease.filter.return_value.first.return_value = None
    with patch.object(other.db, "query", return_value=no_lease):
        with pytest.raises(Busy):
            other.acquire_lease(learner_id, ttl_seconds=60)

    assert other.db.query(InFlightRequest).count() == 1

def test_expired_lease_is_taken_over(store, learner_id, db):
    """Test that a stale lease does not block forever."""
    db.add(InFlightRequest(
        learner_id=learner_id,
        token="stale",
        started_at=utcnow() - timedelta(minutes=5),
        expires_at=utcnow() - timedelta(minutes=4),
    ))
    db.commit()

    token = store.acquire_lease(learner_id, ttl_seconds=60)

    assert token != "stale"
    lease = db.query(InFlightRequest).filter(InFlightRequest.learner_id == learner_id).one()
    assert lease.token == token


def test_release_ignores_foreign_token(store, learner_id, db):
    """Test that only the holder can release a lease."""
    store.acquire_lease(learner_id, ttl_seconds=60)

    store.release_lease(learner_id, "someone-else")

    assert db.query(InFlightRequest).count() == 1
