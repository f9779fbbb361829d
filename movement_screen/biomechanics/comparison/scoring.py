"""Clinical 0-3 scoring from metric results, with overrides and an audit trail."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Iterable, Optional, Sequence

from movement_screen.biomechanics.config import BIOMECHANICS_LOGGER as logger
from movement_screen.models import (
    AssessmentScore,
    AuditEntry,
    MetricResult,
    ValidationError,
    utc_timestamp,
    validate_score,
)

PAIN_REASON = "Pain reported"


@dataclass(frozen=True)
class FailureCounts:
    critical_failed: int
    non_critical_failed: int
    excluded: int = 0


def count_failures(results: Iterable[MetricResult], *, min_confidence: Optional[float] = None) -> FailureCounts:
    """Count metrics that did not pass, split by criticality.

    Warnings count as failures. With ``min_confidence`` set, results below it
    are excluded from both counts and reported in ``excluded``; by default
    zero-confidence results participate like any other.
    """
    critical = 0
    non_critical = 0
    excluded = 0
    for result in results:
        if min_confidence is not None and result.confidence < min_confidence:
            excluded += 1
            continue
        if result.passed:
            continue
        if result.is_critical:
            critical += 1
        else:
            non_critical += 1
    return FailureCounts(critical, non_critical, excluded)


def score_from_failures(counts: FailureCounts) -> int:
    """First matching rule wins."""
    if counts.critical_failed == 0 and counts.non_critical_failed <= 1:
        return 3
    if counts.critical_failed == 1 or (counts.critical_failed == 0 and counts.non_critical_failed <= 2):
        return 2
    if counts.critical_failed >= 2 or counts.non_critical_failed > 2:
        return 1
    return 0


def generate_automatic_score(
    results: Sequence[MetricResult],
    *,
    min_confidence: Optional[float] = None,
) -> int:
    """Score one test/frame; an empty result list scores 0."""
    if not results:
        return 0
    counts = count_failures(results, min_confidence=min_confidence)
    if counts.excluded == len(results):
        logger.debug("All %d metrics excluded below confidence %.1f.", len(results), min_confidence)
        return 0
    return score_from_failures(counts)


def create_assessment_score(
    session_id: str,
    test_id: str,
    results: Sequence[MetricResult],
    *,
    pain_reported: bool = False,
    clinician_id: Optional[str] = None,
    notes: str = "",
    min_confidence: Optional[float] = None,
) -> AssessmentScore:
    """Build an AssessmentScore; pain forces the effective score to 0 and is audited."""
    automatic = generate_automatic_score(results, min_confidence=min_confidence)
    score = AssessmentScore(
        session_id=session_id,
        test_id=test_id,
        score=automatic,
        automatic_score=automatic,
        clinician_id=clinician_id,
        notes=notes,
        metric_results=tuple(results),
    )
    if pain_reported:
        score = apply_pain_flag(score, clinician_id=clinician_id)
    return score


def _append_change(
    score: AssessmentScore,
    new_score: int,
    reason: str,
    clinician_id: Optional[str],
) -> tuple[AuditEntry, ...]:
    entry = AuditEntry(
        timestamp=utc_timestamp(),
        from_score=score.score,
        to_score=new_score,
        reason=reason,
        clinician_id=clinician_id,
    )
    return score.audit_trail + (entry,)


def apply_manual_override(
    score: AssessmentScore,
    new_score: int,
    reason: str,
    *,
    clinician_id: Optional[str] = None,
) -> AssessmentScore:
    """Return a copy with a clinician-entered score; the automatic score is retained."""
    value = validate_score(new_score)
    if not reason or not reason.strip():
        raise ValidationError("A manual override requires a reason.")
    if score.pain_reported and value != 0:
        raise ValidationError("Pain was reported for this test; clear the pain flag before overriding.")
    audit = _append_change(score, value, reason.strip(), clinician_id)
    logger.info("Score for %s/%s overridden %d -> %d", score.session_id, score.test_id, score.score, value)
    return replace(
        score,
        score=value,
        manual_override=value != score.automatic_score,
        override_reason=reason.strip(),
        clinician_id=clinician_id or score.clinician_id,
        timestamp=utc_timestamp(),
        audit_trail=audit,
    )


def apply_pain_flag(
    score: AssessmentScore,
    reported: bool = True,
    *,
    clinician_id: Optional[str] = None,
) -> AssessmentScore:
    """Set or clear the pain flag; pain forces 0, clearing restores the automatic score."""
    if reported == score.pain_reported and (not reported or score.score == 0):
        return score
    if reported:
        audit = _append_change(score, 0, PAIN_REASON, clinician_id)
        return replace(
            score,
            score=0,
            pain_reported=True,
            manual_override=score.automatic_score != 0,
            override_reason=PAIN_REASON,
            timestamp=utc_timestamp(),
            audit_trail=audit,
        )
    audit = _append_change(score, score.automatic_score, "Pain flag cleared", clinician_id)
    return replace(
        score,
        score=score.automatic_score,
        pain_reported=False,
        manual_override=False,
        override_reason=None,
        timestamp=utc_timestamp(),
        audit_trail=audit,
    )


def summarize_results(results: Sequence[MetricResult]) -> dict[str, int]:
    """Counts per status for reporting."""
    summary = {"pass": 0, "warning": 0, "fail": 0}
    for result in results:
        summary[result.status] += 1
    return summary


__all__ = [
    "PAIN_REASON",
    "FailureCounts",
    "count_failures",
    "score_from_failures",
    "generate_automatic_score",
    "create_assessment_score",
    "apply_manual_override",
    "apply_pain_flag",
    "summarize_results",
]
