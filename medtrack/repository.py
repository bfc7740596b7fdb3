# medtrack/repository.py
from __future__ import annotations

import asyncio
import json
from datetime import date, datetime, time as dtime
from typing import Any, Callable, List, Optional, Union

from medtrack.applog import logger
from medtrack.models import DoseHistory, Medication, parse_timestamp, to_local
from medtrack.schedule import doses_on
from medtrack.storage import KeyValueStore, StoreError, StoreReadError

MEDICATIONS_KEY = "@medications"
DOSE_HISTORY_KEY = "@dose_history"

Bound = Union[date, datetime]

_MALFORMED = (ValueError, KeyError, TypeError)


def _range_start(b: Bound) -> datetime:
    if isinstance(b, datetime):
        return to_local(b)
    return datetime.combine(b, dtime.min)


def _range_end(b: Bound) -> datetime:
    if isinstance(b, datetime):
        return to_local(b)
    return datetime.combine(b, dtime.max)


class MedicationRepository:
    """Medications and dose history, each kept as one JSON array in a key-value store.

    Every public operation runs under a single asyncio lock that covers both
    collections, so read-modify-write sequences (including record_dose, which
    touches both) never interleave.

    Reads degrade to an empty list on store or decode failures. Mutations read
    strictly and propagate StoreError, so a blob that cannot be read is never
    overwritten with a partial list.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store
        self._lock = asyncio.Lock()

    # -------------------------
    # Raw collection access (callers hold the lock)
    # -------------------------
    async def _read(self, key: str, factory: Callable[[Any], Any], strict: bool) -> list:
        try:
            data = await self.store.get(key)
            if not data:
                return []
            rows = json.loads(data)
            if not isinstance(rows, list):
                raise TypeError(f"{key} is not a JSON array")
            return [factory(r) for r in rows]
        except (StoreError, *_MALFORMED) as e:
            if strict:
                if isinstance(e, StoreError):
                    raise
                raise StoreReadError(f"malformed blob under {key}: {e}") from e
            logger.exception(f"error reading {key}; returning empty list")
            return []

    async def _read_medications(self, strict: bool = True) -> List[Medication]:
        return await self._read(MEDICATIONS_KEY, Medication.from_dict, strict)

    async def _read_history(self, strict: bool = True) -> List[DoseHistory]:
        return await self._read(DOSE_HISTORY_KEY, DoseHistory.from_dict, strict)

    async def _write_medications(self, meds: List[Medication]):
        await self.store.set(MEDICATIONS_KEY, json.dumps([m.to_dict() for m in meds]))

    async def _write_history(self, history: List[DoseHistory]):
        await self.store.set(DOSE_HISTORY_KEY, json.dumps([h.to_dict() for h in history]))

    async def _replace_medication(self, medication: Medication) -> bool:
        meds = await self._read_medications()
        for i, m in enumerate(meds):
            if m.id == medication.id:
                meds[i] = medication
                await self._write_medications(meds)
                return True
        return False

    # -------------------------
    # Medications
    # -------------------------
    async def list_medications(self) -> List[Medication]:
        async with self._lock:
            return await self._read_medications(strict=False)

    async def get_medication(self, medication_id: str) -> Optional[Medication]:
        meds = await self.list_medications()
        return next((m for m in meds if m.id == medication_id), None)

    async def add_medication(self, medication: Medication):
        async with self._lock:
            meds = await self._read_medications()
            meds.append(medication)
            await self._write_medications(meds)
        logger.info(f"added medication id={medication.id} {medication.name} times={medication.times}")

    async def update_medication(self, medication: Medication) -> bool:
        async with self._lock:
            found = await self._replace_medication(medication)
        if found:
            logger.info(f"updated medication id={medication.id}")
        return found

    async def delete_medication(self, medication_id: str):
        async with self._lock:
            meds = await self._read_medications()
            await self._write_medications([m for m in meds if m.id != medication_id])
        logger.info(f"deleted medication id={medication_id}")

    async def record_refill(self, medication_id: str, amount: Optional[int] = None,
                            when: Optional[datetime] = None) -> Optional[Medication]:
        async with self._lock:
            meds = await self._read_medications()
            med = next((m for m in meds if m.id == medication_id), None)
            if med is None:
                return None
            if amount is None:
                med.current_supply = max(0, med.total_supply)
            else:
                supply = med.current_supply + int(amount)
                if med.total_supply > 0:
                    supply = min(supply, med.total_supply)
                med.current_supply = max(0, supply)
            med.last_refill_date = when or datetime.now().astimezone()
            await self._write_medications(meds)
        logger.info(f"refill: med_id={medication_id} supply={med.current_supply}")
        return med

    # -------------------------
    # Dose history
    # -------------------------
    async def list_dose_history(self) -> List[DoseHistory]:
        async with self._lock:
            return await self._read_history(strict=False)

    async def list_todays_doses(self, now: Optional[datetime] = None) -> List[DoseHistory]:
        history = await self.list_dose_history()
        return doses_on(history, now or datetime.now())

    async def record_dose(self, medication_id: str, taken: bool,
                          timestamp: Union[datetime, str, None] = None) -> DoseHistory:
        if timestamp is None:
            timestamp = datetime.now().astimezone()
        elif isinstance(timestamp, str):
            timestamp = parse_timestamp(timestamp)

        dose = DoseHistory(medication_id=medication_id, timestamp=timestamp, taken=bool(taken))
        async with self._lock:
            # both reads happen before any write, so a read failure leaves nothing behind
            meds = await self._read_medications() if dose.taken else []
            history = await self._read_history()
            history.append(dose)
            await self._write_history(history)

            med = next((m for m in meds if m.id == medication_id), None)
            if med is not None and med.current_supply > 0:
                med.current_supply -= 1
                await self._write_medications(meds)
        logger.info(f"dose log: med_id={medication_id} taken={dose.taken} at={timestamp.isoformat()}")
        return dose

    # -------------------------
    # Bulk clearing
    # -------------------------
    async def clear_all_data(self):
        async with self._lock:
            await self.store.remove(MEDICATIONS_KEY)
            await self.store.remove(DOSE_HISTORY_KEY)
        logger.info("all data cleared")

    async def clear_data_for_date_range(self, start: Bound, end: Bound):
        lo, hi = _range_start(start), _range_end(end)
        async with self._lock:
            meds = await self._read_medications()
            history = await self._read_history()
            kept_meds = [m for m in meds if not lo <= to_local(m.start_date) <= hi]
            kept_history = [h for h in history if not lo <= to_local(h.timestamp) <= hi]
            await self._write_medications(kept_meds)
            await self._write_history(kept_history)
        logger.info(
            f"cleared {lo.isoformat()}..{hi.isoformat()}: "
            f"{len(meds) - len(kept_meds)} medications, {len(history) - len(kept_history)} doses"
        )

    async def clear_old_data(self, before: Bound):
        cutoff = _range_start(before)
        async with self._lock:
            meds = await self._read_medications()
            history = await self._read_history()
            kept_meds = [m for m in meds if to_local(m.start_date) >= cutoff]
            kept_history = [h for h in history if to_local(h.timestamp) >= cutoff]
            await self._write_medications(kept_meds)
            await self._write_history(kept_history)
        logger.info(
            f"cleared before {cutoff.isoformat()}: "
            f"{len(meds) - len(kept_meds)} medications, {len(history) - len(kept_history)} doses"
        )
