"""Practice word pools and canonical transcriptions."""
import json
import logging
import random
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import eng_to_ipa as ipa

from phonocoach.config import settings
from phonocoach.errors import InvalidInput
from phonocoach.models.gateway_models import GenerationResponse
from phonocoach.models.progress_models import DifficultyLevel, WordItem
from phonocoach.services.alignment import tokenize

logger = logging.getLogger(__name__)


class WordPool:
    """Fixed word lists per language, split into calibration and practice pools.

    Each language lives in ``<pools_dir>/<language>.json``::

        {"calibration": {"Kindergarten": [{"word": "cat", "ipa": ["kæt"]}, ...], ...},
         "practice": {...}}
    """

    def __init__(self, pools_dir: Optional[Path] = None, rng: Optional[random.Random] = None):
        self.pools_dir = Path(pools_dir or settings.paths.word_pools_dir)
        self.rng = rng or random.Random()
        self._pools: Dict[str, dict] = {}

    def _load(self, language: str) -> dict:
        if language not in self._pools:
            path = self.pools_dir / f"{language}.json"
            if not path.exists():
                logger.warning(f"No word pool for language '{language}' at {path}")
                self._pools[language] = {}
            else:
                with open(path, encoding="utf-8") as f:
                    self._pools[language] = json.load(f)
                logger.info(f"Loaded word pool for '{language}' from {path}")
        return self._pools[language]

    def words(self, language: str, band: DifficultyLevel, calibration: bool = False) -> List[WordItem]:
        """All pool words for a band, in file order."""
        section = self._load(language).get("calibration" if calibration else "practice", {})
        return [
            WordItem(text=entry["word"], transcriptions=tuple(entry["ipa"]), band=band)
            for entry in section.get(band.value, [])
            if entry.get("ipa")
        ]

    def calibration_word(self, language: str, band: DifficultyLevel, position: int) -> Optional[WordItem]:
        """Word for the n-th calibration step inside a band, or None if the band has no words."""
        words = self.words(language, band, calibration=True)
        if not words:
            return None
        return words[position % len(words)]

    def draw(self, language: str, band: DifficultyLevel, exclude: Iterable[str] = ()) -> Optional[WordItem]:
        """Random practice word for a band, skipping excluded texts."""
        excluded = {text.lower() for text in exclude}
        words = [word for word in self.words(language, band) if word.text.lower() not in excluded]
        if not words:
            logger.debug(f"Practice pool exhausted for {language}/{band.value}")
            return None
        return self.rng.choice(words)

    def draw_with_phoneme(
        self,
        language: str,
        band: DifficultyLevel,
        phoneme: str,
        exclude: Iterable[str] = (),
    ) -> Optional[WordItem]:
        """Random practice word whose canonical transcription contains the phoneme."""
        excluded = {text.lower() for text in exclude}
        words = [
            word for word in self.words(language, band)
            if word.text.lower() not in excluded and phoneme in tokenize(word.transcriptions[0], language)
        ]
        if not words:
            return None
        return self.rng.choice(words)

    def lookup(self, language: str, text: str) -> Optional[WordItem]:
        """Find a word in any band or section of the language's pool."""
        data = self._load(language)
        for section in ("practice", "calibration"):
            for band in DifficultyLevel:
                for entry in data.get(section, {}).get(band.value, []):
                    if entry["word"].lower() == text.lower() and entry.get("ipa"):
                        return WordItem(text=entry["word"], transcriptions=tuple(entry["ipa"]), band=band)
        return None

    @staticmethod
    def transcribe(word: str, language: str) -> List[str]:
        """Dictionary transcriptions of a single English word; empty when unknown."""
        if language != "en" or len(word.split()) != 1:
            return []
        try:
            options = ipa.ipa_list(word)
        except Exception as e:
            logger.error(f"Error generating transcription for word: {word}, error: {e}")
            return []
        transcriptions = [option for option in (options[0] if options else []) if "*" not in option]
        logger.debug(f"Transcriptions for {word}: {transcriptions}")
        return transcriptions

    def from_generated(self, response: GenerationResponse, band: DifficultyLevel, language: str) -> WordItem:
        """Turn a generated word into a WordItem with at least one transcription."""
        transcriptions = list(response.ipa)
        if not transcriptions:
            known = self.lookup(language, response.word)
            transcriptions = list(known.transcriptions) if known else self.transcribe(response.word, language)
        if not transcriptions:
            raise InvalidInput(f"No canonical transcription available for generated word '{response.word}'")
        return WordItem(text=response.word, transcriptions=tuple(transcriptions), band=band, source="generated")
