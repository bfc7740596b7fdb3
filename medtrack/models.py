# medtrack/models.py
from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Union

from medtrack.applog import logger

ONGOING_LABEL = "Ongoing"

_FIRST_INT = re.compile(r"(\d+)")
_STRICT_DAYS = re.compile(r"^\s*(\d+)\s*(days?)?\s*$", re.IGNORECASE)


class DurationError(ValueError):
    pass


def new_id() -> str:
    return uuid.uuid4().hex


# -------------------------
# Time helpers
# -------------------------
def parse_timestamp(s: str) -> datetime:
    s = str(s).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return datetime.fromisoformat(s)


def to_local(dt: datetime) -> datetime:
    """Naive local wall-clock time. Aware values are converted, naive ones are taken as local."""
    if dt.tzinfo is not None:
        return dt.astimezone().replace(tzinfo=None)
    return dt


def local_day(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        return to_local(value).date()
    return value


# -------------------------
# Duration
# -------------------------
# `label` keeps the stored text of records loaded from older data so that
# saving them again writes the same string back. It never affects equality.
@dataclass(frozen=True)
class Ongoing:
    label: str = field(default="", compare=False)

    def end_date(self, start: date) -> Optional[date]:
        return None

    def __str__(self) -> str:
        return self.label or ONGOING_LABEL


@dataclass(frozen=True)
class FixedDays:
    days: int
    label: str = field(default="", compare=False)

    def __post_init__(self):
        if int(self.days) < 1:
            raise DurationError(f"day count must be positive, got {self.days}")

    def end_date(self, start: date) -> Optional[date]:
        # start counts as day 1
        return start + timedelta(days=int(self.days) - 1)

    def __str__(self) -> str:
        return self.label or f"{self.days} days"


@dataclass(frozen=True)
class Lapsed:
    """Stored day count of zero: the window closes before it opens."""

    label: str = field(default="0 days", compare=False)

    def end_date(self, start: date) -> Optional[date]:
        return start - timedelta(days=1)

    def __str__(self) -> str:
        return self.label


Duration = Union[Ongoing, FixedDays, Lapsed]

ONGOING = Ongoing()


def parse_duration(text: str) -> Duration:
    """Strict parser for user input: "Ongoing", "30", "30 days", "1 day"."""
    t = (text or "").strip()
    if t.lower() == ONGOING_LABEL.lower():
        return ONGOING
    m = _STRICT_DAYS.match(t)
    if not m:
        raise DurationError(f"expected 'Ongoing' or a day count like '30 days', got {text!r}")
    return FixedDays(int(m.group(1)))


def load_duration(text: Any) -> Duration:
    """Lenient parser for stored records.

    Takes the first integer in the string; a zero count yields a window that
    has already ended. Strings with no integer at all fall back to Ongoing,
    matching how older records were interpreted. The stored text is kept.
    """
    t = str(text or "").strip()
    if t == ONGOING_LABEL:
        return ONGOING
    m = _FIRST_INT.search(t)
    if m is None:
        logger.warning(f"unparseable duration {t!r}; treating as {ONGOING_LABEL}")
        return Ongoing(label=t)
    n = int(m.group(1))
    if n < 1:
        return Lapsed(label=t)
    canonical = f"{n} days"
    return FixedDays(n, label="" if t == canonical else t)


# -------------------------
# Records
# -------------------------
@dataclass
class Medication:
    name: str
    dosage: str
    times: List[str]
    start_date: datetime
    duration: Duration = ONGOING
    color: str = ""
    reminder_enabled: bool = False
    reminder_repeat: bool = False
    repeat_count: int = 1
    current_supply: int = 0
    total_supply: int = 0
    refill_at: int = 0
    refill_reminder: bool = False
    last_refill_date: Optional[datetime] = None
    id: str = field(default_factory=new_id)

    def end_date(self) -> Optional[date]:
        return self.duration.end_date(local_day(self.start_date))

    def needs_refill(self) -> bool:
        return bool(self.refill_reminder) and self.current_supply <= self.refill_at

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "dosage": self.dosage,
            "times": list(self.times),
            "startDate": self.start_date.isoformat(),
            "duration": str(self.duration),
            "color": self.color,
            "reminderEnabled": bool(self.reminder_enabled),
            "reminderRepeat": bool(self.reminder_repeat),
            "repeatCount": int(self.repeat_count),
            "currentSupply": int(self.current_supply),
            "totalSupply": int(self.total_supply),
            "refillAt": int(self.refill_at),
            "refillReminder": bool(self.refill_reminder),
        }
        if self.last_refill_date is not None:
            d["lastRefillDate"] = self.last_refill_date.isoformat()
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Medication":
        last = d.get("lastRefillDate")
        return cls(
            id=str(d["id"]),
            name=str(d["name"]),
            dosage=str(d.get("dosage", "")),
            times=[str(t) for t in (d.get("times") or [])],
            start_date=parse_timestamp(d["startDate"]),
            duration=load_duration(d.get("duration", ONGOING_LABEL)),
            color=str(d.get("color", "")),
            reminder_enabled=bool(d.get("reminderEnabled", False)),
            reminder_repeat=bool(d.get("reminderRepeat", False)),
            repeat_count=int(d.get("repeatCount", 1)),
            current_supply=max(0, int(d.get("currentSupply", 0))),
            total_supply=int(d.get("totalSupply", 0)),
            refill_at=int(d.get("refillAt", 0)),
            refill_reminder=bool(d.get("refillReminder", False)),
            last_refill_date=parse_timestamp(last) if last else None,
        )


@dataclass(frozen=True)
class DoseHistory:
    medication_id: str
    timestamp: datetime
    taken: bool
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "medicationId": self.medication_id,
            "timestamp": self.timestamp.isoformat(),
            "taken": bool(self.taken),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "DoseHistory":
        return cls(
            id=str(d["id"]),
            medication_id=str(d["medicationId"]),
            timestamp=parse_timestamp(d["timestamp"]),
            taken=bool(d["taken"]),
        )
