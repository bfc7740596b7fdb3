# medtrack/schedule.py
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, List, Sequence, Union

from medtrack.models import DoseHistory, Medication, local_day

DayLike = Union[date, datetime]


def is_scheduled(medication: Medication, day: DayLike) -> bool:
    """True when `day` falls inside the medication's active window.

    Only calendar dates are compared; time of day is ignored on both sides.
    """
    start = local_day(medication.start_date)
    target = local_day(day)
    if target < start:
        return False
    end = medication.duration.end_date(start)
    if end is not None and target > end:
        return False
    return True


def scheduled_times_for(medication: Medication, day: DayLike) -> List[str]:
    # every active day carries the full time list
    if not is_scheduled(medication, day):
        return []
    return list(medication.times)


def scheduled_days_in_month(medications: Sequence[Medication], year: int, month: int) -> List[date]:
    _, ndays = calendar.monthrange(year, month)
    days = []
    for n in range(1, ndays + 1):
        d = date(year, month, n)
        if any(is_scheduled(m, d) for m in medications):
            days.append(d)
    return days


def doses_on(history: Iterable[DoseHistory], day: DayLike) -> List[DoseHistory]:
    target = local_day(day)
    return [h for h in history if local_day(h.timestamp) == target]


@dataclass
class AgendaItem:
    medication: Medication
    times: List[str]
    taken: bool


def agenda_for(medications: Sequence[Medication], history: Iterable[DoseHistory], day: DayLike) -> List[AgendaItem]:
    taken_ids = {h.medication_id for h in doses_on(history, day) if h.taken}
    items = []
    for m in medications:
        if not is_scheduled(m, day):
            continue
        items.append(AgendaItem(medication=m, times=scheduled_times_for(m, day), taken=m.id in taken_ids))
    return items
