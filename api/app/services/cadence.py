"""
Monitoring Cadence

Computes when a monitoring target is due next. The default cadence is
weekly on the tier's ISO weekdays (Monday = 1); targets may instead use a
fixed number of days between runs or a number of runs per month.
"""

from datetime import datetime, timedelta
from typing import Iterable, Optional, Tuple

from app.models import CadenceMode, MonitoringTarget, Tier

MONDAY = 1
THURSDAY = 4

WEEKDAYS_BY_TIER = {
    Tier.NONE: (MONDAY,),
    Tier.BASIC: (MONDAY,),
    Tier.PRO: (MONDAY, THURSDAY),
}

SEARCH_DAYS = 14
FALLBACK_DAYS = 7

INTERVAL_DAYS_DEFAULT = 14
INTERVAL_DAYS_RANGE = (1, 60)
MONTHLY_RUNS_DEFAULT = 2
MONTHLY_RUNS_RANGE = (2, 8)


def weekdays_for_tier(tier: Optional[Tier]) -> Tuple[int, ...]:
    return WEEKDAYS_BY_TIER.get(tier or Tier.NONE, WEEKDAYS_BY_TIER[Tier.NONE])


def compute_next_run(start: datetime, weekdays: Iterable[int]) -> datetime:
    """
    First instant strictly after start whose ISO weekday is in weekdays,
    keeping start's time of day. Searches at most 14 days ahead and falls
    back to start + 7 days.
    """
    days = {day for day in weekdays if isinstance(day, int) and 1 <= day <= 7} or {MONDAY}

    for offset in range(1, SEARCH_DAYS + 1):
        candidate = start + timedelta(days=offset)
        if candidate.isoweekday() in days:
            return candidate

    return start + timedelta(days=FALLBACK_DAYS)


def _clamp(value: int, bounds: Tuple[int, int]) -> int:
    low, high = bounds
    return max(low, min(high, value))


def normalize_cadence(mode: Optional[CadenceMode], value: Optional[int]) -> Tuple[CadenceMode, Optional[int]]:
    """Clamp a requested cadence to the supported ranges."""
    mode = mode or CadenceMode.WEEKLY
    if mode == CadenceMode.INTERVAL_DAYS:
        return mode, _clamp(value if value is not None else INTERVAL_DAYS_DEFAULT, INTERVAL_DAYS_RANGE)
    if mode == CadenceMode.MONTHLY_RUNS:
        return mode, _clamp(value if value is not None else MONTHLY_RUNS_DEFAULT, MONTHLY_RUNS_RANGE)
    return CadenceMode.WEEKLY, None


def cadence_interval_days(mode: CadenceMode, value: Optional[int]) -> int:
    """Days between runs for the fixed-interval cadence modes."""
    mode, value = normalize_cadence(mode, value)
    if mode == CadenceMode.MONTHLY_RUNS:
        return max(1, round(30 / value))
    return max(1, value or INTERVAL_DAYS_DEFAULT)


def next_run_for(target: MonitoringTarget, tier: Optional[Tier], start: datetime) -> datetime:
    """Next due time for target after start."""
    mode = target.cadence_mode or CadenceMode.WEEKLY
    if mode == CadenceMode.WEEKLY:
        return compute_next_run(start, weekdays_for_tier(tier))
    return start + timedelta(days=cadence_interval_days(mode, target.cadence_value))
