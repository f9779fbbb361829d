"""Session report for clinicians: composite FMS score, per-test breakdown, flags.

The payload is plain JSON built from record ``to_dict()`` output so it can be
written to disk or returned by a service unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from movement_screen.biomechanics.comparison.scoring import summarize_results
from movement_screen.biomechanics.metrics.landing_detection import DropJumpAssessment
from movement_screen.models import MAX_SCORE, AssessmentScore

# Drop jump is scored as a risk screen, not on the 0-3 scale.
COMPOSITE_EXCLUDED = frozenset({"drop-jump"})


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _test_entry(score: AssessmentScore) -> Dict[str, Any]:
    critical_failures = [
        result.metric_id for result in score.metric_results if result.is_critical and not result.passed
    ]
    return {
        "test_id": score.test_id,
        "score": score.score,
        "automatic_score": score.automatic_score,
        "manual_override": score.manual_override,
        "override_reason": score.override_reason,
        "pain_reported": score.pain_reported,
        "status_counts": summarize_results(score.metric_results),
        "critical_failures": critical_failures,
    }


def composite_score(scores: Sequence[AssessmentScore]) -> Dict[str, int]:
    counted = [score for score in scores if score.test_id not in COMPOSITE_EXCLUDED]
    return {
        "total": sum(score.score for score in counted),
        "max": MAX_SCORE * len(counted),
        "tests": len(counted),
    }


def _flags(scores: Sequence[AssessmentScore]) -> List[str]:
    flags = []
    for score in scores:
        if score.pain_reported:
            flags.append(f"{score.test_id}: pain reported, refer for clinical evaluation")
        elif score.score == 1:
            flags.append(f"{score.test_id}: unable to complete the pattern")
    return flags


def generate_session_report(
    session_id: str,
    scores: Sequence[AssessmentScore],
    *,
    drop_jump: Optional[DropJumpAssessment] = None,
    clinician_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Build the JSON report for one session; tests appear in the order given."""
    report: Dict[str, Any] = {
        "session_id": session_id,
        "generated_at": _now_iso(),
        "clinician_id": clinician_id,
        "composite": composite_score(scores),
        "tests": [_test_entry(score) for score in scores],
        "flags": _flags(scores),
        "drop_jump": None,
    }
    if drop_jump is not None:
        report["drop_jump"] = {
            "overall_risk": drop_jump.overall_risk,
            "trials": len(drop_jump.trials),
            "risk_distribution": dict(drop_jump.risk_distribution),
            "average_metrics": dict(drop_jump.average_metrics),
            "recommendations": list(drop_jump.recommendations),
        }
    return report


__all__ = ["composite_score", "generate_session_report"]
