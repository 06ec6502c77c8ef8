"""Request/response schemas for the speech backend."""
from typing import List

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GenerationRequest(BaseModel):
    """Form fields of a practice-word generation call."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    phoneme: str = Field(..., min_length=1, description="Phoneme the new word should exercise")
    difficulty_level: str = Field(..., min_length=1, description="Difficulty band value, e.g. Primary-School")
    language: str = Field(..., min_length=1, description="Practice language code, e.g. en")
    target_word: str = Field("test", min_length=1, description="Placeholder the backend form requires")

    def to_form(self) -> dict:
        """Backend form; the language only selects the endpoint."""
        return {
            "phoneme": self.phoneme,
            "difficulty_level": self.difficulty_level,
            "target_word": self.target_word,
        }


class GenerationResponse(BaseModel):
    """Generated practice word. Unknown upstream fields are kept for pass-through."""

    model_config = ConfigDict(extra="allow")

    word: str = Field(..., min_length=1)
    phoneme_count: int = Field(..., ge=0)
    ipa: List[str] = Field(default_factory=list, description="Canonical transcriptions, if the backend sends them")

    @field_validator("ipa", mode="before")
    @classmethod
    def _wrap_single_ipa(cls, value):
        if isinstance(value, str):
            return [value]
        return value


class RecognitionRequest(BaseModel):
    """Multipart fields of a recognition call."""

    model_config = ConfigDict(extra="forbid")

    audio: bytes = Field(..., min_length=1)
    target_word: str = Field(..., min_length=1)
    language: str = Field(..., min_length=1)


class RecognitionResponse(BaseModel):
    """Recognized phonetic transcription of the learner's audio."""

    model_config = ConfigDict(extra="allow")

    transcription: str = Field(..., description="Recognized IPA; empty when nothing was heard")
