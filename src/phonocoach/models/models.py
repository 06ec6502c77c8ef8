"""Database models for learner progress and backend secrets."""
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from phonocoach.models.base import Base, TimestampMixin, utcnow


class Learner(Base, TimestampMixin):
    """A learner and the language they currently practice."""

    __tablename__ = "learners"

    learner_id = Column(String, primary_key=True)
    active_language = Column(String, nullable=False)

    # Relationships
    progress = relationship("LearnerProgressRecord", back_populates="learner")
    history = relationship("HistoryEntry", back_populates="learner")
    phoneme_stats = relationship("PhonemeErrorStat", back_populates="learner")


class LearnerProgressRecord(Base, TimestampMixin):
    """Current calibration/practice state of one learner in one language."""

    __tablename__ = "learner_progress"

    learner_id = Column(String, ForeignKey("learners.learner_id"), primary_key=True)
    language = Column(String, primary_key=True)
    mode = Column(String, nullable=False)  # calibration, practice
    calibration_index = Column(Integer, nullable=True)
    cur_lvl = Column(String, nullable=False)
    cur_word = Column(JSON, nullable=True)
    cur_err = Column(JSON, nullable=False, default=list)
    suggested_level = Column(String, nullable=True)
    consecutive_success_streak = Column(Integer, nullable=False, default=0)
    consecutive_failure_streak = Column(Integer, nullable=False, default=0)
    calibration_log = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=0)

    # Relationships
    learner = relationship("Learner", back_populates="progress")


class HistoryEntry(Base):
    """Append-only audit log: pre-mutation snapshot plus what caused the mutation."""

    __tablename__ = "progress_history"
    __table_args__ = (
        UniqueConstraint("learner_id", "idempotency_key", name="uq_history_idempotency"),
    )

    id = Column(Integer, primary_key=True)
    learner_id = Column(String, ForeignKey("learners.learner_id"), nullable=False, index=True)
    language = Column(String, nullable=False)
    action = Column(String, nullable=False)  # repeat, advance, regress, continue, select_word, skip, reset
    snapshot = Column(JSON, nullable=False)
    diagnosis = Column(JSON, nullable=True)
    idempotency_key = Column(String, nullable=True)
    recorded_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    # Relationships
    learner = relationship("Learner", back_populates="history")


class InFlightRequest(Base):
    """Per-learner lease held while a submission or generation is outstanding."""

    __tablename__ = "in_flight_requests"

    learner_id = Column(String, primary_key=True)
    token = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)


class PhonemeErrorStat(Base, TimestampMixin):
    """Running count of missed phonemes per learner and language."""

    __tablename__ = "phoneme_error_stats"
    __table_args__ = (
        UniqueConstraint("learner_id", "language", "phoneme", name="uq_phoneme_stat"),
    )

    id = Column(Integer, primary_key=True)
    learner_id = Column(String, ForeignKey("learners.learner_id"), nullable=False, index=True)
    language = Column(String, nullable=False)
    phoneme = Column(String, nullable=False)
    err_amount = Column(Integer, nullable=False, default=0)

    # Relationships
    learner = relationship("Learner", back_populates="phoneme_stats")


class SecureStorage(Base, TimestampMixin):
    """Backend endpoints and credentials, looked up by name."""

    __tablename__ = "secure_storage"

    key_name = Column(String, primary_key=True)
    key_value = Column(String, nullable=False)
