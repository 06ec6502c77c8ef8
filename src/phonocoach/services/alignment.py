"""Phoneme alignment and pronunciation error diagnosis.

Everything here is pure: the same inputs always give the same DiagnosisResult,
so attempts can be diagnosed in parallel without coordination.
"""
import logging
import unicodedata
from fractions import Fraction
from typing import List, Optional, Sequence, Tuple

from phonocoach.errors import InvalidInput
from phonocoach.models.diagnosis_models import (
    GAP,
    AlignmentOp,
    Attempt,
    DiagnosisResult,
    ErrorItem,
)

logger = logging.getLogger(__name__)

# Characters that carry no phoneme of their own
IGNORED_CHARS = set("/[]()ˈˌ.‿'*-")

# Multi-character phonemes, matched longest first
MULTI_CHAR_PHONEMES = [
    "tʃ", "dʒ", "t͡ʃ", "d͡ʒ", "t͡s", "d͡z",
    "aɪ", "aʊ", "ɔɪ", "eɪ", "oʊ", "əʊ", "ɪə", "eə", "ʊə", "ɑɪ", "ɑʊ",
    "ɚ", "ɝ",
]

# Affricates written without a tie bar that are single phonemes only in some
# languages; in English /ts/ and /dz/ are two phonemes (cats, kids)
LANGUAGE_AFFRICATES = {
    "zh": ["ts", "dz", "tɕ", "dʑ", "ʈʂ"],
}

# Modifier letters that belong to the preceding phoneme
MODIFIERS = set("ʰʷʲˠˤːˑ˞ⁿˡ˥˦˧˨˩0123456789")


def _phonemes_for(language: Optional[str]) -> List[str]:
    extra = LANGUAGE_AFFRICATES.get((language or "").lower(), [])
    return sorted(MULTI_CHAR_PHONEMES + extra, key=len, reverse=True)


def tokenize(transcription: str, language: Optional[str] = None) -> List[str]:
    """Split an IPA string into phoneme tokens.

    Whitespace separates tokens; stress marks, slashes and brackets are dropped;
    affricates and diphthongs stay whole; diacritics and modifier letters
    (aspiration, length, tone) attach to the phoneme before them. Bare ts/dz
    style affricates are joined only for languages that have them.
    """
    phonemes = _phonemes_for(language)
    cleaned = unicodedata.normalize("NFD", transcription)
    tokens: List[str] = []
    for chunk in cleaned.split():
        chunk = "".join(ch for ch in chunk if ch not in IGNORED_CHARS)
        i = 0
        while i < len(chunk):
            ch = chunk[i]
            if (unicodedata.combining(ch) or ch in MODIFIERS) and tokens:
                tokens[-1] += ch
                i += 1
                continue
            for phoneme in phonemes:
                if chunk.startswith(phoneme, i):
                    tokens.append(phoneme)
                    i += len(phoneme)
                    break
            else:
                tokens.append(ch)
                i += 1
    return [unicodedata.normalize("NFC", token) for token in tokens]


def align(target: Sequence[str], user: Sequence[str]) -> Tuple[int, List[str], List[str], List[AlignmentOp]]:
    """Minimum edit distance alignment of two phoneme sequences.

    Returns the total cost plus the gap-padded target, gap-padded user and the
    op at each aligned position. On equal cost the traceback prefers the
    diagonal, then deletion, then insertion, so the result is deterministic.
    """
    n, m = len(target), len(user)
    dp = [[0] * (m + 1) for _ in range(n + 1)]

    for i in range(1, n + 1):
        dp[i][0] = i
    for j in range(1, m + 1):
        dp[0][j] = j

    for i in range(1, n + 1):
        for j in range(1, m + 1):
            substitution = dp[i - 1][j - 1] + (0 if target[i - 1] == user[j - 1] else 1)
            deletion = dp[i - 1][j] + 1
            insertion = dp[i][j - 1] + 1
            dp[i][j] = min(substitution, deletion, insertion)

    aligned_target: List[str] = []
    aligned_user: List[str] = []
    ops: List[AlignmentOp] = []
    i, j = n, m
    while i > 0 or j > 0:
        if i > 0 and j > 0:
            same = target[i - 1] == user[j - 1]
            if dp[i][j] == dp[i - 1][j - 1] + (0 if same else 1):
                aligned_target.append(target[i - 1])
                aligned_user.append(user[j - 1])
                ops.append(AlignmentOp.MATCH if same else AlignmentOp.SUBSTITUTION)
                i -= 1
                j -= 1
                continue
        if i > 0 and dp[i][j] == dp[i - 1][j] + 1:
            aligned_target.append(target[i - 1])
            aligned_user.append(GAP)
            ops.append(AlignmentOp.DELETION)
            i -= 1
        else:
            aligned_target.append(GAP)
            aligned_user.append(user[j - 1])
            ops.append(AlignmentOp.INSERTION)
            j -= 1

    aligned_target.reverse()
    aligned_user.reverse()
    ops.reverse()
    return dp[n][m], aligned_target, aligned_user, ops


def diagnose(candidates: Sequence[str], recognized: str, language: Optional[str] = None) -> DiagnosisResult:
    """Diagnose a recognized transcription against canonical candidates.

    The candidate with the lowest length-normalized edit cost becomes the best
    match; ties go to the earlier candidate.
    """
    if not candidates:
        raise InvalidInput("At least one canonical transcription is required")

    user_tokens = tokenize(recognized or "", language)
    best = None
    for candidate in candidates:
        target_tokens = tokenize(candidate or "", language)
        if not target_tokens:
            raise InvalidInput(f"Canonical transcription '{candidate}' contains no phonemes")
        cost, aligned_target, aligned_user, ops = align(target_tokens, user_tokens)
        normalized = Fraction(cost, len(target_tokens))
        logger.debug(f"Candidate {candidate!r} vs {recognized!r}: cost {cost}, normalized {float(normalized):.3f}")
        if best is None or normalized < best[0]:
            best = (normalized, candidate, target_tokens, aligned_target, aligned_user, ops)

    _, best_match, target_tokens, aligned_target, aligned_user, ops = best
    error_summary = [
        ErrorItem(position=position, expected=expected, actual=actual, category=op)
        for position, (expected, actual, op) in enumerate(zip(aligned_target, aligned_user, ops))
        if op is not AlignmentOp.MATCH
    ]
    return DiagnosisResult(
        best_match=best_match,
        recognized=recognized or "",
        aligned_target=aligned_target,
        aligned_user=aligned_user,
        ops=ops,
        error_count=len(error_summary),
        phoneme_count=len(target_tokens),
        error_summary=error_summary,
    )


def diagnose_attempt(attempt: Attempt) -> DiagnosisResult:
    """Diagnose an Attempt."""
    return diagnose(attempt.transcriptions, attempt.recognized, attempt.language)
