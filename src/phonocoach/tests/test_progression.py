"""Tests for the calibration and practice progression."""
from dataclasses import replace

import pytest

from phonocoach.config import ProgressionSettings
from phonocoach.errors import InvalidStateTransition
from phonocoach.models.progress_models import (
    Action,
    CalibrationResult,
    DifficultyLevel,
    LearnerProgress,
    Mode,
    WordItem,
)
from phonocoach.services import progression
from phonocoach.services.alignment import diagnose

POLICY = ProgressionSettings(
    calibration_steps=20,
    steps_per_band=5,
    calibration_pass_threshold=0.34,
    advance_streak=3,
    regress_streak=3,
    success_max_errors=0,
)

PERFECT = diagnose(["kæt"], "kæt")
MISSED = diagnose(["kæt"], "kɛt")


def practice_progress(level: DifficultyLevel = DifficultyLevel.PRIMARY_SCHOOL, **kwargs) -> LearnerProgress:
    return replace(
        progression.new_progress("learner", "en"),
        mode=Mode.PRACTICE,
        calibration_index=None,
        cur_lvl=level,
        **kwargs,
    )


def run_calibration(rates_by_band) -> LearnerProgress:
    """Feed 20 steps with the given errors per 10 phonemes in each band."""
    progress = progression.new_progress("learner", "en")
    for step in range(1, 21):
        band = progression.band_index(step, POLICY)
        result = CalibrationResult(step=step, band=band, error_count=rates_by_band[band], phoneme_count=10)
        progress = progression.record_calibration_step(progress, result, POLICY)
    return progress


@pytest.mark.parametrize("step, band", [(1, 0), (5, 0), (6, 1), (10, 1), (11, 2), (16, 3), (20, 3)])
def test_band_index(step, band):
    """Test that each block of five steps maps to one band."""
    assert progression.band_index(step, POLICY) == band


def test_band_index_is_bounded_and_monotonic():
    """Test band_index stays within the four bands and never decreases."""
    bands = [progression.band_index(step, POLICY) for step in range(1, 21)]
    assert bands == sorted(bands)
    assert min(bands) == 0
    assert max(bands) == 3


def test_new_progress():
    """Test that a new learner starts at Calibration(1)."""
    progress = progression.new_progress("learner", "en")

    assert progress.mode is Mode.CALIBRATION
    assert progress.calibration_index == 1
    assert progress.cur_lvl is DifficultyLevel.KINDERGARTEN
    assert progression.level_label(progress) == "initial_test_1"


def test_calibration_advances_one_step_per_submission():
    """Test Calibration(k) -> Calibration(k+1) with band following the step."""
    progress = progression.new_progress("learner", "en")
    for step in range(1, 7):
        action, progress = progression.apply_submission(progress, PERFECT, POLICY)
        assert action is Action.CONTINUE
        assert progress.calibration_index == step + 1

    assert progress.cur_lvl is DifficultyLevel.PRIMARY_SCHOOL
    assert len(progress.calibration_log) == 6


def test_calibration_ends_in_practice_with_suggested_level():
    """Test that the 20th step moves the learner to practice exactly once."""
    progress = run_calibration({0: 0, 1: 1, 2: 5, 3: 0})

    assert progress.mode is Mode.PRACTICE
    assert progress.calibration_index is None
    assert progress.suggested_level is DifficultyLevel.PRIMARY_SCHOOL
    assert progress.cur_lvl is DifficultyLevel.PRIMARY_SCHOOL

    result = CalibrationResult(step=21, band=3, error_count=0, phoneme_count=3)
    with pytest.raises(InvalidStateTransition):
        progression.record_calibration_step(progress, result, POLICY)


@pytest.mark.parametrize("errors, expected", [
    ({0: 0, 1: 0, 2: 0, 3: 0}, DifficultyLevel.ADULT),
    ({0: 9, 1: 0, 2: 0, 3: 0}, DifficultyLevel.KINDERGARTEN),
    ({0: 3, 1: 3, 2: 4, 3: 0}, DifficultyLevel.PRIMARY_SCHOOL),
    ({0: 10, 1: 10, 2: 10, 3: 10}, DifficultyLevel.KINDERGARTEN),
])
def test_suggested_level(errors, expected):
    """Test the highest band passed together with every band below it."""
    assert run_calibration(errors).suggested_level is expected


def test_out_of_order_calibration_result_is_rejected():
    """Test that a result for another step cannot be recorded."""
    progress = progression.new_progress("learner", "en")
    result = CalibrationResult(step=2, band=0, error_count=0, phoneme_count=3)

    with pytest.raises(InvalidStateTransition):
        progression.record_calibration_step(progress, result, POLICY)


def test_skipped_step_counts_as_fully_wrong():
    """Test that a skipped calibration item misses every phoneme."""
    progress = progression.new_progress("learner", "en")

    result = progression.skipped_calibration_result(progress, 4, POLICY)
    updated = progression.record_calibration_step(progress, result, POLICY)

    assert result.skipped is True
    assert result.error_count == result.phoneme_count == 4
    assert updated.calibration_index == 2


def test_practice_success_streak_advances():
    """Test that three successes in a row advance one band."""
    progress = practice_progress()
    actions = []
    for _ in range(3):
        action, progress = progression.apply_submission(progress, PERFECT, POLICY)
        actions.append(action)

    assert actions == [Action.CONTINUE, Action.CONTINUE, Action.ADVANCE]
    assert progress.cur_lvl is DifficultyLevel.SECONDARY_SCHOOL
    assert progress.consecutive_success_streak == 0


def test_practice_failure_streak_regresses():
    """Test that three failures in a row drop one band."""
    progress = practice_progress()
    actions = []
    for _ in range(3):
        action, progress = progression.apply_submission(progress, MISSED, POLICY)
        actions.append(action)

    assert actions == [Action.REPEAT, Action.REPEAT, Action.REGRESS]
    assert progress.cur_lvl is DifficultyLevel.KINDERGARTEN
    assert progress.consecutive_failure_streak == 0
    assert progress.cur_err == tuple(MISSED.error_summary)


def test_success_resets_failure_streak():
    """Test that streaks are consecutive."""
    progress = practice_progress(consecutive_failure_streak=2)

    action, progress = progression.apply_submission(progress, PERFECT, POLICY)

    assert action is Action.CONTINUE
    assert progress.consecutive_failure_streak == 0
    assert progress.consecutive_success_streak == 1


def test_band_is_capped_and_floored():
    """Test that advancing from Adult and regressing from Kindergarten keep the band."""
    top = practice_progress(DifficultyLevel.ADULT, consecutive_success_streak=2)
    action, top = progression.apply_submission(top, PERFECT, POLICY)
    assert action is Action.ADVANCE
    assert top.cur_lvl is DifficultyLevel.ADULT

    bottom = practice_progress(DifficultyLevel.KINDERGARTEN, consecutive_failure_streak=2)
    action, bottom = progression.apply_submission(bottom, MISSED, POLICY)
    assert action is Action.REGRESS
    assert bottom.cur_lvl is DifficultyLevel.KINDERGARTEN


def test_practice_outcome_requires_practice_mode():
    """Test that practice rules do not apply during calibration."""
    with pytest.raises(InvalidStateTransition):
        progression.apply_practice_outcome(progression.new_progress("learner", "en"), PERFECT, POLICY)


def test_reset_calibration():
    """Test that a reset re-enters Calibration(1) and keeps the stored version."""
    progress = practice_progress(
        suggested_level=DifficultyLevel.ADULT,
        version=7,
        cur_word=WordItem(text="hat", transcriptions=("hæt",), band=DifficultyLevel.PRIMARY_SCHOOL),
    )

    reset = progression.reset_calibration(progress)

    assert reset.mode is Mode.CALIBRATION
    assert reset.calibration_index == 1
    assert reset.suggested_level is None
    assert reset.calibration_log == ()
    assert reset.cur_word is None
    assert reset.version == 7


def test_current_item_projection():
    """Test level label and band for both modes."""
    calibrating = replace(progression.new_progress("learner", "en"), calibration_index=12)
    item = progression.current_item(calibrating)
    assert item.label == "initial_test_12"
    assert item.band is DifficultyLevel.SECONDARY_SCHOOL
    assert item.word is None

    practicing = practice_progress(
        cur_word=WordItem(text="hat", transcriptions=("hæt",), band=DifficultyLevel.PRIMARY_SCHOOL)
    )
    item = progression.current_item(practicing)
    assert item.label == "Primary-School"
    assert item.word == "hat"
    assert item.mode is Mode.PRACTICE
