"""Calibration and practice progression for a single learner.

Every function here takes a LearnerProgress and returns a new one; nothing is
mutated in place and nothing is persisted. The orchestrator stores the result
together with the pre-mutation snapshot.
"""
import logging
from collections import defaultdict
from dataclasses import replace
from typing import Dict, Iterable, Optional, Tuple

from phonocoach.config import ProgressionSettings, settings
from phonocoach.errors import InvalidStateTransition
from phonocoach.models.diagnosis_models import DiagnosisResult
from phonocoach.models.progress_models import (
    LEVELS,
    Action,
    CalibrationResult,
    CurrentItem,
    DifficultyLevel,
    LearnerProgress,
    Mode,
)

logger = logging.getLogger(__name__)


def band_index(step: int, policy: Optional[ProgressionSettings] = None) -> int:
    """Difficulty band used at a calibration step: steps 1-5 -> 0, 6-10 -> 1, ..."""
    policy = policy or settings.progression
    return max(0, min((step - 1) // policy.steps_per_band, len(LEVELS) - 1))


def calibration_level(step: int, policy: Optional[ProgressionSettings] = None) -> DifficultyLevel:
    return DifficultyLevel.from_index(band_index(step, policy))


def new_progress(learner_id: str, language: str) -> LearnerProgress:
    """Fresh learner at Calibration(1)."""
    return LearnerProgress(
        learner_id=learner_id,
        language=language,
        mode=Mode.CALIBRATION,
        calibration_index=1,
        cur_lvl=calibration_level(1),
    )


def band_error_rates(results: Iterable[CalibrationResult]) -> Dict[int, float]:
    """Aggregate error rate per band: total errors over total target phonemes."""
    errors: Dict[int, int] = defaultdict(int)
    phonemes: Dict[int, int] = defaultdict(int)
    for result in results:
        errors[result.band] += result.error_count
        phonemes[result.band] += result.phoneme_count
    return {
        band: (errors[band] / phonemes[band]) if phonemes[band] else 1.0
        for band in phonemes
    }


def suggest_level(results: Iterable[CalibrationResult], policy: Optional[ProgressionSettings] = None) -> DifficultyLevel:
    """Highest band that the learner passed together with every band below it.

    A band passes when its aggregate error rate is below the configured
    threshold. A band with no results counts as failed.
    """
    policy = policy or settings.progression
    rates = band_error_rates(results)
    suggested = 0
    for band in range(len(LEVELS)):
        rate = rates.get(band)
        if rate is None or rate >= policy.calibration_pass_threshold:
            break
        suggested = band
    logger.debug(f"Calibration band error rates: {rates}, suggested band: {suggested}")
    return DifficultyLevel.from_index(suggested)


def record_calibration_step(
    progress: LearnerProgress,
    result: CalibrationResult,
    policy: Optional[ProgressionSettings] = None,
) -> LearnerProgress:
    """Calibration(step) -> Calibration(step+1), or -> Practice after the last step."""
    policy = policy or settings.progression
    if progress.mode is not Mode.CALIBRATION:
        raise InvalidStateTransition(f"Learner {progress.learner_id} is not calibrating")

    step = progress.calibration_index
    if step is None or not 1 <= step <= policy.calibration_steps:
        raise InvalidStateTransition(f"Calibration step {step} is out of range")
    if result.step != step or len(progress.calibration_log) != step - 1:
        raise InvalidStateTransition(
            f"Calibration result for step {result.step} does not follow step {step}"
        )

    log = progress.calibration_log + (result,)
    if step < policy.calibration_steps:
        return replace(
            progress,
            calibration_index=step + 1,
            cur_lvl=calibration_level(step + 1, policy),
            calibration_log=log,
        )

    suggested = suggest_level(log, policy)
    logger.info(f"Learner {progress.learner_id} finished calibration, suggested level {suggested.value}")
    return replace(
        progress,
        mode=Mode.PRACTICE,
        calibration_index=None,
        cur_lvl=suggested,
        suggested_level=suggested,
        consecutive_success_streak=0,
        consecutive_failure_streak=0,
        calibration_log=log,
    )


def calibration_result(
    progress: LearnerProgress,
    diagnosis: DiagnosisResult,
    policy: Optional[ProgressionSettings] = None,
) -> CalibrationResult:
    step = progress.calibration_index or 0
    return CalibrationResult(
        step=step,
        band=band_index(step, policy),
        error_count=diagnosis.error_count,
        phoneme_count=diagnosis.phoneme_count,
    )


def skipped_calibration_result(
    progress: LearnerProgress,
    phoneme_count: int,
    policy: Optional[ProgressionSettings] = None,
) -> CalibrationResult:
    """A skipped item counts as every phoneme missed."""
    step = progress.calibration_index or 0
    phoneme_count = max(phoneme_count, 1)
    return CalibrationResult(
        step=step,
        band=band_index(step, policy),
        error_count=phoneme_count,
        phoneme_count=phoneme_count,
        skipped=True,
    )


def is_success(diagnosis: DiagnosisResult, policy: Optional[ProgressionSettings] = None) -> bool:
    policy = policy or settings.progression
    return diagnosis.error_count <= policy.success_max_errors


def apply_practice_outcome(
    progress: LearnerProgress,
    diagnosis: DiagnosisResult,
    policy: Optional[ProgressionSettings] = None,
) -> Tuple[Action, LearnerProgress]:
    """Update streaks and band after a diagnosed practice attempt."""
    policy = policy or settings.progression
    if progress.mode is not Mode.PRACTICE:
        raise InvalidStateTransition(f"Learner {progress.learner_id} is not in practice mode")

    band = progress.cur_lvl.index
    if is_success(diagnosis, policy):
        successes = progress.consecutive_success_streak + 1
        if successes >= policy.advance_streak:
            action = Action.ADVANCE
            band = min(band + 1, len(LEVELS) - 1)
            successes = 0
        else:
            action = Action.CONTINUE
        failures = 0
    else:
        failures = progress.consecutive_failure_streak + 1
        if failures >= policy.regress_streak:
            action = Action.REGRESS
            band = max(band - 1, 0)
            failures = 0
        else:
            action = Action.REPEAT
        successes = 0

    updated = replace(
        progress,
        cur_lvl=DifficultyLevel.from_index(band),
        cur_err=tuple(diagnosis.error_summary),
        consecutive_success_streak=successes,
        consecutive_failure_streak=failures,
    )
    if updated.cur_lvl is not progress.cur_lvl:
        logger.info(f"Learner {progress.learner_id}: {action.value} {progress.cur_lvl.value} -> {updated.cur_lvl.value}")
    return action, updated


def apply_submission(
    progress: LearnerProgress,
    diagnosis: DiagnosisResult,
    policy: Optional[ProgressionSettings] = None,
) -> Tuple[Action, LearnerProgress]:
    """Route a diagnosed attempt to the transition for the learner's mode."""
    if progress.mode is Mode.CALIBRATION:
        updated = record_calibration_step(progress, calibration_result(progress, diagnosis, policy), policy)
        return Action.CONTINUE, replace(updated, cur_err=tuple(diagnosis.error_summary))
    return apply_practice_outcome(progress, diagnosis, policy)


def reset_calibration(progress: LearnerProgress) -> LearnerProgress:
    """Administrative reset back to Calibration(1)."""
    return replace(new_progress(progress.learner_id, progress.language), version=progress.version)


def level_label(progress: LearnerProgress) -> str:
    """Level shown to the learner: initial_test_<step> while calibrating, else the band."""
    if progress.mode is Mode.CALIBRATION:
        return f"initial_test_{progress.calibration_index}"
    return progress.cur_lvl.value


def current_band(progress: LearnerProgress) -> DifficultyLevel:
    if progress.mode is Mode.CALIBRATION:
        return calibration_level(progress.calibration_index or 1)
    return progress.cur_lvl


def current_item(progress: LearnerProgress) -> CurrentItem:
    return CurrentItem(
        word=progress.cur_word.text if progress.cur_word else None,
        band=current_band(progress),
        mode=progress.mode,
        label=level_label(progress),
    )
