"""
Diff Engine

Compares two consecutive successful monitoring runs.
"""

from typing import Any, Iterable, List, Optional

from app.schemas.audit import IMPACT_ORDER, ImpactCounts, Issue, Summary
from app.schemas.monitoring import MonitoringDiff


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def normalize_summary(raw: Any) -> Summary:
    """Coerce stored JSON (possibly partial or camelCase) into a Summary."""
    if isinstance(raw, Summary):
        return raw
    if not isinstance(raw, dict):
        return Summary()

    by_impact = raw.get("by_impact")
    if by_impact is None:
        by_impact = raw.get("byImpact")
    if not isinstance(by_impact, dict):
        by_impact = {}

    return Summary(
        total=_to_int(raw.get("total")),
        by_impact=ImpactCounts(**{impact: _to_int(by_impact.get(impact)) for impact in IMPACT_ORDER}),
    )


def normalize_diff(raw: Any) -> Optional[MonitoringDiff]:
    if not isinstance(raw, dict):
        return None
    return MonitoringDiff.model_validate(raw)


def extract_issue_ids(issues: Iterable[Any]) -> List[str]:
    """Unique, trimmed rule ids in first-seen order."""
    seen = {}
    for issue in issues:
        issue_id = issue.id if isinstance(issue, Issue) else (issue or {}).get("id")
        issue_id = str(issue_id or "").strip()
        if issue_id and issue_id not in seen:
            seen[issue_id] = None
    return list(seen)


def build_monitoring_diff(
    previous_summary: Optional[Any],
    previous_issue_ids: Optional[Iterable[str]],
    current_summary: Any,
    current_issue_ids: Iterable[str],
) -> MonitoringDiff:
    """
    Difference between the previous and current run.

    A missing previous run counts as an empty summary, so the first diff
    reports the full current total.
    """
    previous = normalize_summary(previous_summary)
    current = normalize_summary(current_summary)
    previous_ids = set(previous_issue_ids or [])
    current_ids = set(current_issue_ids)

    by_impact_delta = ImpactCounts(
        **{
            impact: getattr(current.by_impact, impact) - getattr(previous.by_impact, impact)
            for impact in IMPACT_ORDER
        }
    )

    new_ids = sorted(current_ids - previous_ids)
    resolved_ids = sorted(previous_ids - current_ids)

    return MonitoringDiff(
        total_delta=current.total - previous.total,
        by_impact_delta=by_impact_delta,
        new_issues=len(new_ids),
        resolved_issues=len(resolved_ids),
        new_issue_ids=new_ids,
        resolved_issue_ids=resolved_ids,
    )


def is_worsening(diff: MonitoringDiff) -> bool:
    return (
        diff.total_delta > 0
        or diff.by_impact_delta.critical > 0
        or diff.by_impact_delta.serious > 0
    )


def is_improving(diff: MonitoringDiff) -> bool:
    return diff.total_delta < 0
