"""Persistence of learner progress, history, leases and phoneme statistics."""
import logging
import uuid
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from phonocoach.errors import Busy, InvalidInput, VersionConflict
from phonocoach.models.base import as_utc, utcnow
from phonocoach.models.diagnosis_models import DiagnosisResult
from phonocoach.models.models import (
    HistoryEntry,
    InFlightRequest,
    Learner,
    LearnerProgressRecord,
    PhonemeErrorStat,
)
from phonocoach.models.progress_models import HistoryRecord, LearnerProgress

logger = logging.getLogger(__name__)


def _record_values(progress: LearnerProgress) -> dict:
    data = progress.to_data()
    data.pop("learner_id")
    data.pop("language")
    data.pop("version")
    return data


def _to_progress(record: LearnerProgressRecord) -> LearnerProgress:
    return LearnerProgress.from_data({
        "learner_id": record.learner_id,
        "language": record.language,
        "mode": record.mode,
        "calibration_index": record.calibration_index,
        "cur_lvl": record.cur_lvl,
        "cur_word": record.cur_word,
        "cur_err": record.cur_err,
        "suggested_level": record.suggested_level,
        "consecutive_success_streak": record.consecutive_success_streak,
        "consecutive_failure_streak": record.consecutive_failure_streak,
        "calibration_log": record.calibration_log,
        "version": record.version,
    })


def _to_history(entry: HistoryEntry) -> HistoryRecord:
    return HistoryRecord(
        action=entry.action,
        snapshot=entry.snapshot,
        diagnosis=DiagnosisResult.from_data(entry.diagnosis) if entry.diagnosis else None,
        idempotency_key=entry.idempotency_key,
        recorded_at=as_utc(entry.recorded_at) if entry.recorded_at else None,
    )


class ProgressStore:
    """Versioned learner progress on top of a SQLAlchemy session."""

    def __init__(self, db: Session):
        """Initialize the store with a database session."""
        self.db = db

    def _learner(self, learner_id: str) -> Optional[Learner]:
        return self.db.query(Learner).filter(Learner.learner_id == learner_id).first()

    def _record(self, learner_id: str, language: Optional[str] = None) -> Optional[LearnerProgressRecord]:
        if language is None:
            learner = self._learner(learner_id)
            if learner is None:
                return None
            language = learner.active_language
        return (
            self.db.query(LearnerProgressRecord)
            .filter(
                LearnerProgressRecord.learner_id == learner_id,
                LearnerProgressRecord.language == language,
            )
            .first()
        )

    def get(self, learner_id: str, language: Optional[str] = None) -> Optional[LearnerProgress]:
        """Get a learner's progress in a language (default: the active one), or None."""
        record = self._record(learner_id, language)
        return _to_progress(record) if record else None

    def read(self, learner_id: str, language: Optional[str] = None) -> LearnerProgress:
        """Get a learner's progress; unknown learners are an input error."""
        progress = self.get(learner_id, language)
        if progress is None:
            raise InvalidInput(f"Unknown learner: {learner_id} ({language or 'active language'})")
        return progress

    def create(self, progress: LearnerProgress) -> LearnerProgress:
        """Insert progress for a new learner or language at version 0 and make it the active language."""
        if self._record(progress.learner_id, progress.language) is not None:
            raise VersionConflict(f"Learner {progress.learner_id} already practices {progress.language}")
        learner = self._learner(progress.learner_id)
        if learner is None:
            self.db.add(Learner(learner_id=progress.learner_id, active_language=progress.language))
        else:
            learner.active_language = progress.language
        record = LearnerProgressRecord(
            learner_id=progress.learner_id, language=progress.language, version=0, **_record_values(progress)
        )
        self.db.add(record)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise VersionConflict(f"Learner {progress.learner_id} already practices {progress.language}") from e
        logger.info(f"Created progress for learner {progress.learner_id} ({progress.language})")
        return self.read(progress.learner_id, progress.language)

    def set_active_language(self, learner_id: str, language: str) -> LearnerProgress:
        """Switch the learner to a language they already have progress in."""
        progress = self.read(learner_id, language)
        self.db.query(Learner).filter(Learner.learner_id == learner_id).update(
            {"active_language": language, "updated_at": utcnow()}, synchronize_session=False
        )
        self.db.commit()
        self.db.expire_all()
        logger.info(f"Learner {learner_id} switched to {language}")
        return progress

    def _update(self, learner_id: str, progress: LearnerProgress, expected_version: int) -> None:
        updated = (
            self.db.query(LearnerProgressRecord)
            .filter(
                LearnerProgressRecord.learner_id == learner_id,
                LearnerProgressRecord.language == progress.language,
                LearnerProgressRecord.version == expected_version,
            )
            .update(
                {**_record_values(progress), "version": expected_version + 1, "updated_at": utcnow()},
                synchronize_session=False,
            )
        )
        if updated != 1:
            self.db.rollback()
            raise VersionConflict(
                f"Progress of learner {learner_id} changed since version {expected_version}"
            )

    def _add_history(self, learner_id: str, entry: HistoryRecord) -> None:
        self.db.add(HistoryEntry(
            learner_id=learner_id,
            language=entry.snapshot["language"],
            action=entry.action,
            snapshot=entry.snapshot,
            diagnosis=entry.diagnosis.to_data() if entry.diagnosis else None,
            idempotency_key=entry.idempotency_key,
            recorded_at=entry.recorded_at or utcnow(),
        ))

    def _count_errors(self, learner_id: str, language: str, diagnosis: DiagnosisResult) -> None:
        for phoneme in diagnosis.missed_phonemes:
            stat = (
                self.db.query(PhonemeErrorStat)
                .filter(
                    PhonemeErrorStat.learner_id == learner_id,
                    PhonemeErrorStat.language == language,
                    PhonemeErrorStat.phoneme == phoneme,
                )
                .first()
            )
            if stat:
                stat.err_amount += 1
            else:
                stat = PhonemeErrorStat(learner_id=learner_id, language=language, phoneme=phoneme, err_amount=1)
                self.db.add(stat)
            self.db.flush()

    def _finish(self, learner_id: str, language: str) -> LearnerProgress:
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise VersionConflict(f"Concurrent update of learner {learner_id}") from e
        self.db.expire_all()
        return self.read(learner_id, language)

    def write(self, learner_id: str, progress: LearnerProgress, expected_version: int) -> LearnerProgress:
        """Replace progress if it is still at expected_version; returns the stored progress."""
        self._update(learner_id, progress, expected_version)
        return self._finish(learner_id, progress.language)

    def append_history(self, learner_id: str, entry: HistoryRecord) -> None:
        self._add_history(learner_id, entry)
        self._finish(learner_id, entry.snapshot["language"])

    def commit(
        self,
        learner_id: str,
        progress: LearnerProgress,
        expected_version: int,
        entry: HistoryRecord,
    ) -> LearnerProgress:
        """Write progress, its history entry and phoneme statistics in one transaction."""
        try:
            self._update(learner_id, progress, expected_version)
            self._add_history(learner_id, entry)
            if entry.diagnosis is not None:
                self._count_errors(learner_id, progress.language, entry.diagnosis)
        except IntegrityError as e:
            self.db.rollback()
            raise VersionConflict(f"Concurrent update of learner {learner_id}") from e
        return self._finish(learner_id, progress.language)

    def find_submission(self, learner_id: str, idempotency_key: str) -> Optional[HistoryRecord]:
        """History entry recorded for an idempotency key, if any."""
        entry = (
            self.db.query(HistoryEntry)
            .filter(
                HistoryEntry.learner_id == learner_id,
                HistoryEntry.idempotency_key == idempotency_key,
            )
            .first()
        )
        return _to_history(entry) if entry else None

    def list_history(
        self, learner_id: str, limit: Optional[int] = None, language: Optional[str] = None
    ) -> List[HistoryRecord]:
        """History entries, newest first, optionally of one language only."""
        query = self.db.query(HistoryEntry).filter(HistoryEntry.learner_id == learner_id)
        if language:
            query = query.filter(HistoryEntry.language == language)
        query = query.order_by(HistoryEntry.id.desc())
        if limit:
            query = query.limit(limit)
        return [_to_history(entry) for entry in query.all()]

    def phoneme_summary(self, learner_id: str, language: str, limit: int = 5) -> List[Tuple[str, int]]:
        """Most-missed phonemes with their error amounts."""
        stats = (
            self.db.query(PhonemeErrorStat)
            .filter(
                PhonemeErrorStat.learner_id == learner_id,
                PhonemeErrorStat.language == language,
            )
            .order_by(PhonemeErrorStat.err_amount.desc(), PhonemeErrorStat.phoneme)
            .limit(limit)
            .all()
        )
        return [(stat.phoneme, stat.err_amount) for stat in stats]

    def acquire_lease(self, learner_id: str, ttl_seconds: int) -> str:
        """Take the learner's in-flight lease or raise Busy. Expired leases are taken over."""
        now = utcnow()
        token = uuid.uuid4().hex
        lease = self.db.query(InFlightRequest).filter(InFlightRequest.learner_id == learner_id).first()
        if lease is not None:
            if as_utc(lease.expires_at) > now:
                raise Busy(f"A request is already in flight for learner {learner_id}")
            taken = (
                self.db.query(InFlightRequest)
                .filter(
                    InFlightRequest.learner_id == learner_id,
                    InFlightRequest.token == lease.token,
                )
                .update(
                    {"token": token, "started_at": now, "expires_at": now + timedelta(seconds=ttl_seconds)},
                    synchronize_session=False,
                )
            )
            if taken != 1:
                self.db.rollback()
                raise Busy(f"A request is already in flight for learner {learner_id}")
            logger.warning(f"Took over expired lease of learner {learner_id}")
        try:
            if lease is None:
                self.db.execute(
                    insert(InFlightRequest).values(
                        learner_id=learner_id,
                        token=token,
                        started_at=now,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                    )
                )
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise Busy(f"A request is already in flight for learner {learner_id}") from e
        self.db.expire_all()
        return token

    def release_lease(self, learner_id: str, token: str) -> None:
        """Drop the lease if it is still ours."""
        self.db.rollback()
        (
            self.db.query(InFlightRequest)
            .filter(
                InFlightRequest.learner_id == learner_id,
                InFlightRequest.token == token,
            )
            .delete(synchronize_session=False)
        )
        self.db.commit()
