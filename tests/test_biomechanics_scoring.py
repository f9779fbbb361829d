from __future__ import annotations

import pytest

from movement_screen.biomechanics.comparison.scoring import (
    PAIN_REASON,
    FailureCounts,
    apply_manual_override,
    apply_pain_flag,
    count_failures,
    create_assessment_score,
    generate_automatic_score,
    score_from_failures,
    summarize_results,
)
from movement_screen.models import MetricResult, ValidationError


def _result(metric_id: str, passed: bool, *, critical: bool = True, warning: bool = False, confidence: float = 90.0):
    return MetricResult(
        metric_id=metric_id,
        name=metric_id.replace("-", " ").title(),
        target_description="",
        actual_value=0.0,
        unit="°",
        passed=passed,
        warning=warning,
        is_critical=critical,
        category="angle",
        deviation=0.0 if passed else 10.0,
        deviation_direction="+",
        confidence=confidence,
    )


@pytest.mark.parametrize(
    ("critical", "non_critical", "expected"),
    [
        (0, 0, 3),
        (0, 1, 3),
        (0, 2, 2),
        (1, 0, 2),
        (1, 5, 2),
        (2, 0, 1),
        (0, 3, 1),
    ],
)
def test_score_rules(critical: int, non_critical: int, expected: int) -> None:
    assert score_from_failures(FailureCounts(critical, non_critical)) == expected


def test_automatic_score_counts_warnings_as_failures() -> None:
    results = [
        _result("a", True),
        _result("b", False, warning=True),
        _result("c", False, critical=False),
    ]
    counts = count_failures(results)
    assert counts == FailureCounts(critical_failed=1, non_critical_failed=1)
    assert generate_automatic_score(results) == 2


def test_empty_results_score_zero() -> None:
    assert generate_automatic_score([]) == 0


def test_min_confidence_excludes_weak_results() -> None:
    results = [_result("a", True), _result("b", False, confidence=10.0)]
    assert generate_automatic_score(results) == 2
    assert generate_automatic_score(results, min_confidence=50.0) == 3

    weak = [_result("a", False, confidence=5.0), _result("b", False, confidence=5.0)]
    assert generate_automatic_score(weak, min_confidence=50.0) == 0


def test_pain_forces_zero_and_keeps_automatic_score() -> None:
    score = create_assessment_score("s1", "deep-squat", [_result("a", True)], pain_reported=True, clinician_id="pt-7")
    assert score.score == 0
    assert score.automatic_score == 3
    assert score.pain_reported is True
    assert score.override_reason == PAIN_REASON
    assert len(score.audit_trail) == 1
    entry = score.audit_trail[0]
    assert (entry.from_score, entry.to_score, entry.clinician_id) == (3, 0, "pt-7")


def test_manual_override_is_audited() -> None:
    score = create_assessment_score("s1", "deep-squat", [_result("a", True)])
    updated = apply_manual_override(score, 1, "  Heels lifted  ", clinician_id="pt-7")
    assert updated.score == 1
    assert updated.automatic_score == 3
    assert updated.manual_override is True
    assert updated.override_reason == "Heels lifted"
    assert updated.audit_trail[-1].from_score == 3
    assert updated.audit_trail[-1].to_score == 1
    assert score.score == 3


def test_manual_override_requires_reason_and_valid_score() -> None:
    score = create_assessment_score("s1", "deep-squat", [_result("a", True)])
    with pytest.raises(ValidationError):
        apply_manual_override(score, 2, "   ")
    with pytest.raises(ValidationError):
        apply_manual_override(score, 4, "Out of range")


def test_override_cannot_lift_pain_score() -> None:
    score = create_assessment_score("s1", "deep-squat", [_result("a", True)], pain_reported=True)
    with pytest.raises(ValidationError):
        apply_manual_override(score, 2, "Looked fine")
    confirmed = apply_manual_override(score, 0, "Confirmed pain")
    assert confirmed.score == 0


def test_clearing_pain_restores_automatic_score() -> None:
    score = create_assessment_score("s1", "deep-squat", [_result("a", True)], pain_reported=True)
    cleared = apply_pain_flag(score, False)
    assert cleared.score == 3
    assert cleared.pain_reported is False
    assert [entry.to_score for entry in cleared.audit_trail] == [0, 3]
    assert apply_pain_flag(cleared, False) is cleared


def test_summarize_results_counts_statuses() -> None:
    results = [_result("a", True), _result("b", False, warning=True), _result("c", False)]
    assert summarize_results(results) == {"pass": 1, "warning": 1, "fail": 1}
