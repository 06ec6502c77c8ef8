"""Service that runs a learner through calibration and practice."""
import logging
from collections import Counter
from contextlib import contextmanager
from dataclasses import replace
from typing import Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from phonocoach import monitoring
from phonocoach.config import PracticeSettings, ProgressionSettings, settings
from phonocoach.errors import Busy, InvalidInput, InvalidStateTransition, PhonocoachError
from phonocoach.models.diagnosis_models import DiagnosisResult, ErrorItem
from phonocoach.models.gateway_models import GenerationRequest
from phonocoach.models.progress_models import (
    Action,
    CurrentItem,
    DifficultyLevel,
    HistoryRecord,
    LearnerProgress,
    Mode,
    ProgressEvent,
    SubmissionResult,
    WordItem,
)
from phonocoach.services import progression
from phonocoach.services.alignment import diagnose, tokenize
from phonocoach.services.gateway import SpeechGateway
from phonocoach.services.progress_store import ProgressStore
from phonocoach.services.word_pool import WordPool

logger = logging.getLogger(__name__)


class PracticeService:
    """Diagnoses attempts, moves learners through the progression and picks their next word.

    Every mutating operation holds the learner's in-flight lease, so at most one
    recognition or generation call is outstanding per learner. A diagnosed
    attempt is committed before the next word is chosen; if choosing fails the
    attempt stays recorded and select_next_word can be retried.
    """

    def __init__(
        self,
        db: Session,
        gateway: SpeechGateway,
        word_pool: Optional[WordPool] = None,
        progression_settings: Optional[ProgressionSettings] = None,
        practice_settings: Optional[PracticeSettings] = None,
    ):
        """Initialize the service with a database session and a speech gateway."""
        self.store = ProgressStore(db)
        self.gateway = gateway
        self.word_pool = word_pool or WordPool()
        self.policy = progression_settings or settings.progression
        self.practice = practice_settings or settings.practice

    @contextmanager
    def _lease(self, learner_id: str) -> Iterator[None]:
        try:
            token = self.store.acquire_lease(learner_id, self.practice.lease_ttl_seconds)
        except Busy:
            monitoring.busy_rejections.inc()
            logger.info(f"Learner {learner_id} is busy, rejecting request")
            raise
        try:
            yield
        finally:
            self.store.release_lease(learner_id, token)

    async def start_learner(self, learner_id: str, language: Optional[str] = None) -> LearnerProgress:
        """Start or resume a learner in a language with a current word.

        A language the learner never practiced starts at Calibration(1) with its
        own progress. A known language is resumed as stored. Either way it
        becomes the active language of the other operations. Without a language
        the active one (or the default for new learners) is used.
        """
        if not learner_id:
            raise InvalidInput("learner_id is required")
        if language is not None:
            language = language.strip().lower()
            if not language:
                raise InvalidInput("language must not be blank")

        with self._lease(learner_id):
            active = self.store.get(learner_id)
            language = language or (active.language if active else self.practice.default_language)
            progress = self.store.get(learner_id, language)
            if progress is None:
                progress = self.store.create(progression.new_progress(learner_id, language))
                self.store.append_history(
                    learner_id, HistoryRecord(action=ProgressEvent.START.value, snapshot=progress.to_data())
                )
            elif active is None or active.language != language:
                progress = self.store.set_active_language(learner_id, language)
            if progress.cur_word is None:
                progress = await self._select_and_store(progress)
            return progress

    async def submit_attempt(self, learner_id: str, audio: bytes, idempotency_key: str) -> SubmissionResult:
        """Recognize, diagnose and apply one spoken attempt at the current word."""
        if not idempotency_key:
            raise InvalidInput("idempotency_key is required")
        if not audio:
            raise InvalidInput("audio is required")

        replayed = self._replay(learner_id, idempotency_key)
        if replayed:
            return replayed

        with self._lease(learner_id):
            # The same key may have finished while we waited for the lease
            replayed = self._replay(learner_id, idempotency_key)
            if replayed:
                return replayed

            progress = self.store.read(learner_id)
            word = progress.cur_word
            if word is None:
                raise InvalidStateTransition(f"Learner {learner_id} has no current word")

            try:
                recognized = await self.gateway.recognize(audio, word.text, progress.language)
                diagnosis = diagnose(word.transcriptions, recognized, progress.language)
                action, updated = progression.apply_submission(progress, diagnosis, self.policy)
                stored = self.store.commit(
                    learner_id,
                    updated,
                    progress.version,
                    HistoryRecord(
                        action=action.value,
                        snapshot=progress.to_data(),
                        diagnosis=diagnosis,
                        idempotency_key=idempotency_key,
                    ),
                )
            except PhonocoachError as e:
                monitoring.error_count.labels(error_type=e.kind).inc()
                raise

            monitoring.submissions.labels(mode=progress.mode.value, action=action.value).inc()
            completed = progress.mode is Mode.CALIBRATION and stored.mode is Mode.PRACTICE
            if completed:
                monitoring.calibrations_completed.labels(suggested_level=stored.suggested_level.value).inc()
            logger.info(
                f"Learner {learner_id} said '{recognized}' for '{word.text}': "
                f"{diagnosis.error_count} errors, {action.value}, now {progression.level_label(stored)}"
            )

            stored, selection_error = await self._try_select(stored, action, diagnosis)
            return SubmissionResult(
                diagnosis=diagnosis,
                progress=stored,
                action=action,
                selection_error=selection_error,
                calibration_completed=completed,
            )

    def _replay(self, learner_id: str, idempotency_key: str) -> Optional[SubmissionResult]:
        entry = self.store.find_submission(learner_id, idempotency_key)
        if entry is None:
            return None
        logger.info(f"Replaying submission {idempotency_key} of learner {learner_id}")
        monitoring.replayed_submissions.inc()
        action = Action(entry.action) if entry.action in {a.value for a in Action} else None
        return SubmissionResult(
            diagnosis=entry.diagnosis,
            progress=self.store.read(learner_id),
            action=action,
            replayed=True,
        )

    async def skip_item(self, learner_id: str, idempotency_key: str) -> SubmissionResult:
        """Skip the current word.

        A calibration skip consumes the step as a fully missed attempt. A
        practice skip only draws another word; streaks stay as they are.
        """
        if not idempotency_key:
            raise InvalidInput("idempotency_key is required")

        replayed = self._replay(learner_id, idempotency_key)
        if replayed:
            return replayed

        with self._lease(learner_id):
            replayed = self._replay(learner_id, idempotency_key)
            if replayed:
                return replayed

            progress = self.store.read(learner_id)
            updated = progress
            if progress.mode is Mode.CALIBRATION:
                phoneme_count = 1
                if progress.cur_word:
                    phoneme_count = len(tokenize(progress.cur_word.transcriptions[0], progress.language))
                result = progression.skipped_calibration_result(progress, phoneme_count, self.policy)
                updated = progression.record_calibration_step(progress, result, self.policy)

            stored = self.store.commit(
                learner_id,
                updated,
                progress.version,
                HistoryRecord(
                    action=ProgressEvent.SKIP.value,
                    snapshot=progress.to_data(),
                    idempotency_key=idempotency_key,
                ),
            )
            completed = progress.mode is Mode.CALIBRATION and stored.mode is Mode.PRACTICE
            if completed:
                monitoring.calibrations_completed.labels(suggested_level=stored.suggested_level.value).inc()
            logger.info(f"Learner {learner_id} skipped '{progress.cur_word.text if progress.cur_word else None}'")

            stored, selection_error = await self._try_select(stored)
            return SubmissionResult(
                diagnosis=None,
                progress=stored,
                selection_error=selection_error,
                calibration_completed=completed,
            )

    async def select_next_word(self, learner_id: str) -> LearnerProgress:
        """Choose a new current word, e.g. after a failed selection."""
        with self._lease(learner_id):
            progress = self.store.read(learner_id)
            action, diagnosis = None, None
            last = self.store.list_history(learner_id, limit=1, language=progress.language)
            if last and last[0].diagnosis is not None and last[0].action == Action.REPEAT.value:
                action, diagnosis = Action.REPEAT, last[0].diagnosis
            return await self._select_and_store(progress, action, diagnosis)

    async def reset_calibration(self, learner_id: str) -> LearnerProgress:
        """Send a learner back to Calibration(1) and pick the first calibration word."""
        with self._lease(learner_id):
            progress = self.store.read(learner_id)
            stored = self.store.commit(
                learner_id,
                progression.reset_calibration(progress),
                progress.version,
                HistoryRecord(action=ProgressEvent.RESET.value, snapshot=progress.to_data()),
            )
            logger.info(f"Learner {learner_id} reset to calibration")
            return await self._select_and_store(stored)

    def get_current_item(self, learner_id: str) -> CurrentItem:
        return progression.current_item(self.store.read(learner_id))

    def get_phoneme_summary(self, learner_id: str, limit: Optional[int] = None) -> List[Tuple[str, int]]:
        """Most-missed phonemes of the learner in their current language."""
        progress = self.store.read(learner_id)
        return self.store.phoneme_summary(
            learner_id, progress.language, limit or self.practice.phoneme_summary_limit
        )

    def get_practice_records(self, learner_id: str, limit: Optional[int] = None) -> List[HistoryRecord]:
        """History of the learner in their active language, newest first."""
        progress = self.store.read(learner_id)
        return self.store.list_history(learner_id, limit, language=progress.language)

    async def _try_select(
        self,
        progress: LearnerProgress,
        action: Optional[Action] = None,
        diagnosis: Optional[DiagnosisResult] = None,
    ) -> Tuple[LearnerProgress, Optional[PhonocoachError]]:
        try:
            return await self._select_and_store(progress, action, diagnosis), None
        except PhonocoachError as e:
            monitoring.error_count.labels(error_type=e.kind).inc()
            logger.error(f"Word selection failed for learner {progress.learner_id}: {e.message}")
            return progress, e

    async def _select_and_store(
        self,
        progress: LearnerProgress,
        action: Optional[Action] = None,
        diagnosis: Optional[DiagnosisResult] = None,
    ) -> LearnerProgress:
        word = await self._select_word(progress, action, diagnosis)
        logger.info(f"Next word for learner {progress.learner_id}: '{word.text}' ({word.band.value}, {word.source})")
        return self.store.commit(
            progress.learner_id,
            replace(progress, cur_word=word),
            progress.version,
            HistoryRecord(action=ProgressEvent.SELECT_WORD.value, snapshot=progress.to_data()),
        )

    async def _select_word(
        self,
        progress: LearnerProgress,
        action: Optional[Action],
        diagnosis: Optional[DiagnosisResult],
    ) -> WordItem:
        band = progression.current_band(progress)
        language = progress.language

        if progress.mode is Mode.CALIBRATION:
            position = (progress.calibration_index - 1) % self.policy.steps_per_band
            word = self.word_pool.calibration_word(language, band, position)
            if word is not None:
                return word
            return await self._generate(progress, band, diagnosis)

        previous = [progress.cur_word.text] if progress.cur_word else []
        if action is Action.REPEAT and diagnosis is not None and diagnosis.error_count:
            if self.practice.generate_on_repeat:
                return await self._generate(progress, band, diagnosis)
            phoneme = self._phoneme_focus(progress, diagnosis.error_summary)
            word = self.word_pool.draw_with_phoneme(language, band, phoneme, exclude=previous)
            if word is not None:
                return word

        word = self.word_pool.draw(language, band, exclude=previous)
        if word is not None:
            return word
        return await self._generate(progress, band, diagnosis)

    async def _generate(
        self,
        progress: LearnerProgress,
        band: DifficultyLevel,
        diagnosis: Optional[DiagnosisResult],
    ) -> WordItem:
        errors = diagnosis.error_summary if diagnosis is not None else progress.cur_err
        request = GenerationRequest(
            phoneme=self._phoneme_focus(progress, errors),
            difficulty_level=band.value,
            language=progress.language,
        )
        response = await self.gateway.generate(request)
        return self.word_pool.from_generated(response, band, progress.language)

    def _phoneme_focus(self, progress: LearnerProgress, errors: Sequence[ErrorItem]) -> str:
        """Most frequent missed phoneme, else the learner's most missed overall, else the previous word's first."""
        missed = Counter(item.phoneme for item in errors)
        if missed:
            return missed.most_common(1)[0][0]
        top = self.store.phoneme_summary(progress.learner_id, progress.language, limit=1)
        if top:
            return top[0][0]
        if progress.cur_word is not None:
            tokens = tokenize(progress.cur_word.transcriptions[0], progress.language)
            if tokens:
                return tokens[0]
        raise InvalidInput(f"No phoneme to focus on for learner {progress.learner_id}")
