# main.py
# MedTrack: medication tracker (headless front end over the encrypted local store)
#
# - Add a medication:   python main.py add --name Amoxicillin --dosage "500mg" --time 08:00 --time 20:00 --duration "10 days" --supply 20
# - Take a dose:        python main.py take <id>
# - Calendar month:     python main.py calendar --month 2024-01
#
# Data lives under --data-dir, $MEDTRACK_HOME, $ANDROID_PRIVATE/medtrack_data or ./medtrack_data.
from __future__ import annotations

import argparse
import asyncio
import calendar
import sys
from datetime import date, datetime
from typing import List, Optional

from medtrack.applog import clear_log, configure_logging, logger
from medtrack.config import AppConfig
from medtrack.models import DoseHistory, DurationError, Medication, parse_duration, parse_timestamp, to_local
from medtrack.repository import MedicationRepository
from medtrack.schedule import agenda_for, scheduled_days_in_month, scheduled_times_for
from medtrack.storage import EncryptedFileStore, MemoryStore, StoreError, load_or_create_key

WEEKDAYS = ["Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat"]


def open_repository(cfg: AppConfig) -> MedicationRepository:
    if cfg.ephemeral:
        return MedicationRepository(MemoryStore())
    key = load_or_create_key(cfg.key_path)
    return MedicationRepository(EncryptedFileStore(cfg.store_path, key))


# -------------------------
# Argument types
# -------------------------
def _duration_arg(s: str):
    try:
        return parse_duration(s)
    except DurationError as e:
        raise argparse.ArgumentTypeError(str(e))


def _date_arg(s: str) -> date:
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {s!r}")


def _timestamp_arg(s: str) -> datetime:
    try:
        return parse_timestamp(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected an ISO-8601 timestamp, got {s!r}")


def _month_arg(s: str):
    try:
        y, m = (int(x) for x in s.split("-"))
        date(y, m, 1)
        return y, m
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM, got {s!r}")


def _time_arg(s: str) -> str:
    try:
        h, m = map(int, s.split(":"))
        if not (0 <= h < 24 and 0 <= m < 60):
            raise ValueError
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected HH:MM, got {s!r}")
    return f"{h:02d}:{m:02d}"


# -------------------------
# Formatting
# -------------------------
def _med_line(m: Medication) -> str:
    times = ", ".join(m.times) or "-"
    end = m.end_date()
    window = f"{to_local(m.start_date).date().isoformat()} .. {end.isoformat() if end else 'ongoing'}"
    refill = "  REFILL" if m.needs_refill() else ""
    return (f"{m.id}  {m.name} ({m.dosage})  [{times}]  {window}  "
            f"supply {m.current_supply}/{m.total_supply}{refill}")


def _dose_line(h: DoseHistory, names) -> str:
    status = "taken" if h.taken else "skipped"
    when = to_local(h.timestamp).strftime("%Y-%m-%d %H:%M")
    return f"{when}  {names.get(h.medication_id, 'Unknown')}  {status}"


def _month_grid(year: int, month: int, marked: List[date]) -> str:
    marks = set(marked)
    lines = [f"{calendar.month_name[month]} {year}".center(28), " ".join(f"{d:>3}" for d in WEEKDAYS)]
    for week in calendar.Calendar(firstweekday=6).monthdayscalendar(year, month):
        cells = []
        for n in week:
            if n == 0:
                cells.append("   ")
            else:
                cells.append(f"{n:>2}{'*' if date(year, month, n) in marks else ' '}")
        lines.append(" ".join(cells))
    return "\n".join(lines)


# -------------------------
# Commands
# -------------------------
async def cmd_add(repo: MedicationRepository, a) -> int:
    start = a.start or date.today()
    med = Medication(
        name=a.name,
        dosage=a.dosage,
        times=sorted(set(a.time or ["09:00"])),
        start_date=datetime.combine(start, datetime.min.time()),
        duration=a.duration,
        color=a.color,
        reminder_enabled=a.reminder,
        current_supply=max(0, a.supply),
        total_supply=max(a.total if a.total is not None else a.supply, 0),
        refill_at=a.refill_at,
        refill_reminder=a.refill_reminder,
    )
    await repo.add_medication(med)
    print(med.id)
    return 0


async def cmd_list(repo: MedicationRepository, a) -> int:
    meds = await repo.list_medications()
    for m in meds:
        print(_med_line(m))
    print(f"{len(meds)} medications")
    return 0


async def cmd_update(repo: MedicationRepository, a) -> int:
    med = await repo.get_medication(a.id)
    if med is None:
        print(f"no medication with id {a.id}", file=sys.stderr)
        return 1
    if a.name is not None:
        med.name = a.name
    if a.dosage is not None:
        med.dosage = a.dosage
    if a.time:
        med.times = sorted(set(a.time))
    if a.start is not None:
        med.start_date = datetime.combine(a.start, datetime.min.time())
    if a.duration is not None:
        med.duration = a.duration
    if a.total is not None:
        med.total_supply = max(0, a.total)
    if a.refill_at is not None:
        med.refill_at = a.refill_at
    await repo.update_medication(med)
    print(_med_line(med))
    return 0


async def cmd_delete(repo: MedicationRepository, a) -> int:
    await repo.delete_medication(a.id)
    return 0


async def cmd_dose(repo: MedicationRepository, a) -> int:
    med = await repo.get_medication(a.id)
    if med is None:
        print(f"no medication with id {a.id}", file=sys.stderr)
        return 1
    taken = a.command == "take"
    await repo.record_dose(med.id, taken, a.at)
    name = med.name
    med = await repo.get_medication(med.id)
    if med is None:
        print(f"{name}: {'taken' if taken else 'skipped'}")
        return 0
    print(f"{med.name}: {'taken' if taken else 'skipped'}  supply {med.current_supply}/{med.total_supply}")
    if med.needs_refill():
        print(f"{med.name} is running low; refill soon")
    return 0


async def cmd_refill(repo: MedicationRepository, a) -> int:
    med = await repo.record_refill(a.id, amount=a.amount)
    if med is None:
        print(f"no medication with id {a.id}", file=sys.stderr)
        return 1
    print(_med_line(med))
    return 0


async def cmd_today(repo: MedicationRepository, a) -> int:
    meds = await repo.list_medications()
    names = {m.id: m.name for m in meds}
    doses = await repo.list_todays_doses()
    for h in doses:
        print(_dose_line(h, names))
    print(f"{len(doses)} doses logged today")
    return 0


async def cmd_day(repo: MedicationRepository, a) -> int:
    day = a.date or date.today()
    meds = await repo.list_medications()
    history = await repo.list_dose_history()
    items = agenda_for(meds, history, day)
    if not items:
        print(f"No medications scheduled for {day.isoformat()}")
        return 0
    for it in items:
        state = "Taken" if it.taken else "Due"
        print(f"{it.medication.name} ({it.medication.dosage})  {', '.join(it.times)}  {state}")
    return 0


async def cmd_calendar(repo: MedicationRepository, a) -> int:
    today = date.today()
    year, month = a.month or (today.year, today.month)
    meds = await repo.list_medications()
    print(_month_grid(year, month, scheduled_days_in_month(meds, year, month)))
    if a.verbose:
        for m in meds:
            first = next((d for d in scheduled_days_in_month([m], year, month)), None)
            times = scheduled_times_for(m, first) if first else []
            print(f"{m.name}: {', '.join(times) if times else 'not scheduled this month'}")
    return 0


async def cmd_history(repo: MedicationRepository, a) -> int:
    meds = await repo.list_medications()
    names = {m.id: m.name for m in meds}
    history = sorted(await repo.list_dose_history(), key=lambda h: to_local(h.timestamp), reverse=True)
    for h in history[: max(1, a.limit)]:
        print(_dose_line(h, names))
    print(f"{len(history)} entries")
    return 0


async def cmd_clear(repo: MedicationRepository, a) -> int:
    if a.all:
        await repo.clear_all_data()
    elif a.before is not None:
        await repo.clear_old_data(a.before)
    else:
        await repo.clear_data_for_date_range(a.start, a.end)
    return 0


COMMANDS = {
    "add": cmd_add,
    "list": cmd_list,
    "update": cmd_update,
    "delete": cmd_delete,
    "take": cmd_dose,
    "skip": cmd_dose,
    "refill": cmd_refill,
    "today": cmd_today,
    "day": cmd_day,
    "calendar": cmd_calendar,
    "history": cmd_history,
    "clear": cmd_clear,
}


# -------------------------
# CLI
# -------------------------
def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="MedTrack: local medication and dose tracker")
    p.add_argument("--data-dir", default=None, help="Directory for the encrypted store, key and log.")
    p.add_argument("--ephemeral", action="store_true", help="Keep data in memory only (nothing is written).")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("add", help="Add a medication.")
    s.add_argument("--name", required=True)
    s.add_argument("--dosage", default="")
    s.add_argument("--time", action="append", type=_time_arg, help="HH:MM, repeatable.")
    s.add_argument("--start", type=_date_arg, default=None, help="YYYY-MM-DD (default today).")
    s.add_argument("--duration", type=_duration_arg, default=parse_duration("Ongoing"),
                   help="'Ongoing' or a day count such as '30 days'.")
    s.add_argument("--color", default="#4CAF50")
    s.add_argument("--reminder", action="store_true")
    s.add_argument("--supply", type=int, default=0)
    s.add_argument("--total", type=int, default=None)
    s.add_argument("--refill-at", type=int, default=0)
    s.add_argument("--refill-reminder", action="store_true")

    sub.add_parser("list", help="List medications.")

    s = sub.add_parser("update", help="Change fields of a medication.")
    s.add_argument("id")
    s.add_argument("--name", default=None)
    s.add_argument("--dosage", default=None)
    s.add_argument("--time", action="append", type=_time_arg)
    s.add_argument("--start", type=_date_arg, default=None)
    s.add_argument("--duration", type=_duration_arg, default=None)
    s.add_argument("--total", type=int, default=None)
    s.add_argument("--refill-at", type=int, default=None)

    s = sub.add_parser("delete", help="Delete a medication (its dose history is kept).")
    s.add_argument("id")

    for name, text in (("take", "Record a taken dose."), ("skip", "Record a skipped dose.")):
        s = sub.add_parser(name, help=text)
        s.add_argument("id")
        s.add_argument("--at", type=_timestamp_arg, default=None, help="ISO-8601 timestamp (default now).")

    s = sub.add_parser("refill", help="Refill supply (to total, or by --amount).")
    s.add_argument("id")
    s.add_argument("--amount", type=int, default=None)

    sub.add_parser("today", help="Doses logged today.")

    s = sub.add_parser("day", help="Medications scheduled on a day and whether they were taken.")
    s.add_argument("date", nargs="?", type=_date_arg, default=None)

    s = sub.add_parser("calendar", help="Month view; '*' marks days with scheduled medications.")
    s.add_argument("--month", type=_month_arg, default=None, help="YYYY-MM (default this month).")
    s.add_argument("-v", "--verbose", action="store_true")

    s = sub.add_parser("history", help="Most recent dose log entries.")
    s.add_argument("--limit", type=int, default=80)

    s = sub.add_parser("clear", help="Remove stored data.")
    g = s.add_mutually_exclusive_group(required=True)
    g.add_argument("--all", action="store_true")
    g.add_argument("--from", dest="start", type=_date_arg, default=None)
    g.add_argument("--before", type=_date_arg, default=None)
    s.add_argument("--to", dest="end", type=_date_arg, default=None)

    s = sub.add_parser("log", help="Show (or clear) the application log.")
    s.add_argument("--clear", action="store_true")
    return p


def main(argv: Optional[List[str]] = None) -> int:
    p = build_parser()
    a = p.parse_args(argv)
    if a.command == "clear" and a.start is not None and a.end is None:
        p.error("clear --from requires --to")

    cfg = AppConfig.from_env(a.data_dir, ephemeral=a.ephemeral)
    configure_logging(None if cfg.ephemeral else cfg.log_path)

    if a.command == "log":
        if a.clear:
            clear_log(cfg.log_path)
            return 0
        if cfg.log_path.exists():
            print(cfg.log_path.read_text(encoding="utf-8"), end="")
        return 0

    logger.info(f"command={a.command} base={cfg.data_dir}")
    try:
        repo = open_repository(cfg)
        return asyncio.run(COMMANDS[a.command](repo, a))
    except StoreError as e:
        logger.exception(f"{a.command} failed")
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
