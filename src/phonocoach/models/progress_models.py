"""Models for learner progress, word items and orchestrator results."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from phonocoach.models.diagnosis_models import DiagnosisResult, ErrorItem


class DifficultyLevel(Enum):
    """Ordered vocabulary difficulty bands."""
    KINDERGARTEN = "Kindergarten"
    PRIMARY_SCHOOL = "Primary-School"
    SECONDARY_SCHOOL = "Secondary-School"
    ADULT = "Adult"

    @property
    def index(self) -> int:
        return LEVELS.index(self)

    @classmethod
    def from_index(cls, index: int) -> "DifficultyLevel":
        index = max(0, min(index, len(LEVELS) - 1))
        return LEVELS[index]

    @classmethod
    def parse(cls, value: str) -> "DifficultyLevel":
        """Accept the band value, its name, or a snake_case alias (primary_school)."""
        normalized = value.replace("_", "-").lower()
        normalized = LEVEL_ALIASES.get(normalized, normalized)
        for level in cls:
            if value == level.name or normalized == level.value.lower():
                return level
        raise ValueError(f"Unknown difficulty level: {value}")


LEVELS: List[DifficultyLevel] = list(DifficultyLevel)
LEVEL_ALIASES = {"middle-school": "secondary-school"}


class Mode(Enum):
    """Learner progression mode."""
    CALIBRATION = "calibration"
    PRACTICE = "practice"


class Action(Enum):
    """Decision taken after a diagnosed attempt."""
    REPEAT = "repeat"  # failure, band unchanged
    ADVANCE = "advance"  # success streak reached, band up
    REGRESS = "regress"  # failure streak reached, band down
    CONTINUE = "continue"  # success, or a calibration step


class ProgressEvent(Enum):
    """History entries that are not diagnosed submissions."""
    START = "start"
    SELECT_WORD = "select_word"
    SKIP = "skip"
    RESET = "reset"


@dataclass(frozen=True)
class WordItem:
    """A practice word with its canonical transcriptions, most preferred first."""
    text: str
    transcriptions: Tuple[str, ...]
    band: DifficultyLevel
    source: str = "pool"  # pool, generated

    def to_data(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "transcriptions": list(self.transcriptions),
            "band": self.band.value,
            "source": self.source,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "WordItem":
        return cls(
            text=data["text"],
            transcriptions=tuple(data["transcriptions"]),
            band=DifficultyLevel(data["band"]),
            source=data.get("source", "pool"),
        )


@dataclass(frozen=True)
class CalibrationResult:
    """Outcome of one calibration step."""
    step: int
    band: int
    error_count: int
    phoneme_count: int
    skipped: bool = False

    def to_data(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "band": self.band,
            "error_count": self.error_count,
            "phoneme_count": self.phoneme_count,
            "skipped": self.skipped,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "CalibrationResult":
        return cls(**data)


@dataclass(frozen=True)
class LearnerProgress:
    """Persistent calibration/practice state of one learner."""
    learner_id: str
    language: str
    mode: Mode = Mode.CALIBRATION
    calibration_index: Optional[int] = 1
    cur_lvl: DifficultyLevel = DifficultyLevel.KINDERGARTEN
    cur_word: Optional[WordItem] = None
    cur_err: Tuple[ErrorItem, ...] = ()
    suggested_level: Optional[DifficultyLevel] = None
    consecutive_success_streak: int = 0
    consecutive_failure_streak: int = 0
    calibration_log: Tuple[CalibrationResult, ...] = ()
    version: int = 0

    def to_data(self) -> Dict[str, Any]:
        """Convert to serializable data for storage."""
        return {
            "learner_id": self.learner_id,
            "language": self.language,
            "mode": self.mode.value,
            "calibration_index": self.calibration_index,
            "cur_lvl": self.cur_lvl.value,
            "cur_word": self.cur_word.to_data() if self.cur_word else None,
            "cur_err": [item.to_data() for item in self.cur_err],
            "suggested_level": self.suggested_level.value if self.suggested_level else None,
            "consecutive_success_streak": self.consecutive_success_streak,
            "consecutive_failure_streak": self.consecutive_failure_streak,
            "calibration_log": [result.to_data() for result in self.calibration_log],
            "version": self.version,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "LearnerProgress":
        """Create a LearnerProgress instance from stored data."""
        return cls(
            learner_id=data["learner_id"],
            language=data["language"],
            mode=Mode(data["mode"]),
            calibration_index=data.get("calibration_index"),
            cur_lvl=DifficultyLevel(data["cur_lvl"]),
            cur_word=WordItem.from_data(data["cur_word"]) if data.get("cur_word") else None,
            cur_err=tuple(ErrorItem.from_data(item) for item in data.get("cur_err") or []),
            suggested_level=DifficultyLevel(data["suggested_level"]) if data.get("suggested_level") else None,
            consecutive_success_streak=data.get("consecutive_success_streak", 0),
            consecutive_failure_streak=data.get("consecutive_failure_streak", 0),
            calibration_log=tuple(
                CalibrationResult.from_data(item) for item in data.get("calibration_log") or []
            ),
            version=data.get("version", 0),
        )


@dataclass(frozen=True)
class CurrentItem:
    """What the learner should say next."""
    word: Optional[str]
    band: DifficultyLevel
    mode: Mode
    label: str


@dataclass
class HistoryRecord:
    """One append-only history entry."""
    action: str
    snapshot: Dict[str, Any]
    diagnosis: Optional[DiagnosisResult] = None
    idempotency_key: Optional[str] = None
    recorded_at: Optional[datetime] = None


@dataclass
class SubmissionResult:
    """What submit_attempt and skip_item hand back to the presentation layer.

    diagnosis is None for skipped items.
    """
    diagnosis: Optional[DiagnosisResult]
    progress: LearnerProgress
    action: Optional[Action] = None
    replayed: bool = False
    selection_error: Optional[Exception] = None
    calibration_completed: bool = False
