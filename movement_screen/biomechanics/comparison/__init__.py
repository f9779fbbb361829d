"""Clinical scoring and session reporting."""

from __future__ import annotations

from typing import Any

__all__ = [
    "count_failures",
    "generate_automatic_score",
    "create_assessment_score",
    "apply_manual_override",
    "apply_pain_flag",
    "summarize_results",
    "composite_score",
    "generate_session_report",
]

_SCORING_EXPORTS = {
    "count_failures",
    "generate_automatic_score",
    "create_assessment_score",
    "apply_manual_override",
    "apply_pain_flag",
    "summarize_results",
}
_REPORT_EXPORTS = {"composite_score", "generate_session_report"}


def __getattr__(name: str) -> Any:  # pragma: no cover - exercised indirectly
    if name in _SCORING_EXPORTS:
        from . import scoring as _scoring

        return getattr(_scoring, name)
    if name in _REPORT_EXPORTS:
        from . import reporter as _reporter

        return getattr(_reporter, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


def __dir__() -> list[str]:  # pragma: no cover - trivial
    return sorted(set(list(globals()) + __all__))
