"""Models for alignment and diagnosis results."""
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

GAP = "-"


class AlignmentOp(Enum):
    """Edit operation at one aligned position."""
    MATCH = "match"
    SUBSTITUTION = "substitution"
    INSERTION = "insertion"  # learner produced an extra phoneme
    DELETION = "deletion"  # learner dropped a target phoneme


@dataclass(frozen=True)
class Attempt:
    """One spoken attempt at a target word. Never persisted directly."""
    word: str
    transcriptions: List[str]
    recognized: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    language: Optional[str] = None


@dataclass(frozen=True)
class ErrorItem:
    """A single non-match position in the alignment."""
    position: int
    expected: str
    actual: str
    category: AlignmentOp

    @property
    def phoneme(self) -> str:
        """The phoneme this error is attributed to."""
        return self.expected if self.expected != GAP else self.actual

    def to_data(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "expected": self.expected,
            "actual": self.actual,
            "category": self.category.value,
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "ErrorItem":
        return cls(
            position=data["position"],
            expected=data["expected"],
            actual=data["actual"],
            category=AlignmentOp(data["category"]),
        )


@dataclass(frozen=True)
class DiagnosisResult:
    """Structured record of alignment errors for one attempt.

    error_count counts every non-match op, so insertions can push it above
    phoneme_count.
    """
    best_match: str
    recognized: str
    aligned_target: List[str]
    aligned_user: List[str]
    ops: List[AlignmentOp]
    error_count: int
    phoneme_count: int
    error_summary: List[ErrorItem]

    @property
    def error_rate(self) -> float:
        """Errors per target phoneme."""
        if not self.phoneme_count:
            return 0.0
        return self.error_count / self.phoneme_count

    @property
    def missed_phonemes(self) -> List[str]:
        """Phonemes the errors are attributed to, in alignment order."""
        return [item.phoneme for item in self.error_summary]

    def to_data(self) -> Dict[str, Any]:
        """Convert to serializable data for storage."""
        return {
            "best_match": self.best_match,
            "recognized": self.recognized,
            "aligned_target": list(self.aligned_target),
            "aligned_user": list(self.aligned_user),
            "ops": [op.value for op in self.ops],
            "error_count": self.error_count,
            "phoneme_count": self.phoneme_count,
            "error_summary": [item.to_data() for item in self.error_summary],
        }

    @classmethod
    def from_data(cls, data: Dict[str, Any]) -> "DiagnosisResult":
        """Create a DiagnosisResult from stored data."""
        return cls(
            best_match=data["best_match"],
            recognized=data["recognized"],
            aligned_target=list(data["aligned_target"]),
            aligned_user=list(data["aligned_user"]),
            ops=[AlignmentOp(op) for op in data["ops"]],
            error_count=data["error_count"],
            phoneme_count=data["phoneme_count"],
            error_summary=[ErrorItem.from_data(item) for item in data["error_summary"]],
        )
