import os
import io
import json
import asyncio
import tempfile
import unittest
from contextlib import redirect_stdout, redirect_stderr
from datetime import date, datetime, timedelta
from pathlib import Path
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import main as cli
from medtrack.applog import configure_logging, ring_text
from medtrack.models import (
    ONGOING, DoseHistory, DurationError, FixedDays, Lapsed, Medication, load_duration, parse_duration,
)
from medtrack.repository import DOSE_HISTORY_KEY, MEDICATIONS_KEY, MedicationRepository
from medtrack.schedule import agenda_for, doses_on, is_scheduled, scheduled_days_in_month, scheduled_times_for
from medtrack.storage import (
    EncryptedFileStore, MemoryStore, StoreReadError, StoreWriteError, aes_decrypt, aes_encrypt,
    load_or_create_key,
)


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


def _med(name="Aspirin", start=datetime(2024, 1, 1), duration=ONGOING, supply=10, total=30, **kw):
    return Medication(name=name, dosage="100mg", times=["08:00", "20:00"], start_date=start,
                      duration=duration, current_supply=supply, total_supply=total, **kw)


class SlowStore(MemoryStore):
    """Yields to the event loop inside every call so overlapping operations interleave."""

    async def get(self, key):
        await asyncio.sleep(0)
        value = await super().get(key)
        await asyncio.sleep(0)
        return value

    async def set(self, key, value):
        await asyncio.sleep(0)
        await super().set(key, value)


class FailingStore(MemoryStore):
    def __init__(self, initial=None):
        super().__init__(initial)
        self.fail_reads = False
        self.fail_writes = False

    async def get(self, key):
        if self.fail_reads:
            raise StoreReadError("read failed")
        return await super().get(key)

    async def set(self, key, value):
        if self.fail_writes:
            raise StoreWriteError("write failed")
        await super().set(key, value)

    async def remove(self, key):
        if self.fail_writes:
            raise StoreWriteError("remove failed")
        await super().remove(key)


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = os.urandom(1024 * 64)
        ct = aes_encrypt(pt, key)
        self.assertEqual(pt, aes_decrypt(ct, key))

    def test_key_is_created_once(self):
        with tempfile.TemporaryDirectory() as td:
            kp = Path(td) / ".enc_key"
            k1 = load_or_create_key(kp)
            k2 = load_or_create_key(kp)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestEncryptedFileStore(unittest.TestCase):
    def test_set_get_remove(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), key)

            async def scenario():
                self.assertIsNone(await store.get(MEDICATIONS_KEY))
                await store.set(MEDICATIONS_KEY, '[{"name": "Metformin"}]')
                self.assertEqual(await store.get(MEDICATIONS_KEY), '[{"name": "Metformin"}]')
                await store.remove(MEDICATIONS_KEY)
                await store.remove(MEDICATIONS_KEY)
                self.assertIsNone(await store.get(MEDICATIONS_KEY))

            _run(scenario())

    def test_blob_is_encrypted_on_disk(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), key)
            _run(store.set(DOSE_HISTORY_KEY, "Metformin"))
            raw = store.path_for(DOSE_HISTORY_KEY).read_bytes()
            self.assertNotIn(b"Metformin", raw)

    def test_blob_is_bound_to_its_key(self):
        key = AESGCM.generate_key(bit_length=256)
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), key)
            _run(store.set(MEDICATIONS_KEY, "[]"))
            store.path_for(MEDICATIONS_KEY).replace(store.path_for(DOSE_HISTORY_KEY))
            with self.assertRaises(StoreReadError):
                _run(store.get(DOSE_HISTORY_KEY))
            self.assertEqual(sorted(p.name for p in Path(td).iterdir()), ["_dose_history.json.aes"])

    def test_wrong_key_is_a_read_error(self):
        with tempfile.TemporaryDirectory() as td:
            _run(EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256)).set("@k", "v"))
            other = EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256))
            with self.assertRaises(StoreReadError):
                _run(other.get("@k"))


class TestDuration(unittest.TestCase):
    def test_strict_parser(self):
        self.assertEqual(parse_duration("Ongoing"), ONGOING)
        self.assertEqual(parse_duration("ongoing"), ONGOING)
        self.assertEqual(parse_duration("30 days"), FixedDays(30))
        self.assertEqual(parse_duration("7"), FixedDays(7))
        self.assertEqual(parse_duration("1 Day"), FixedDays(1))

    def test_strict_parser_rejects(self):
        for bad in ("", "forever", "0 days", "two weeks", "30 days then 10"):
            with self.assertRaises(DurationError, msg=bad):
                parse_duration(bad)

    def test_lenient_loader_takes_first_integer(self):
        self.assertEqual(load_duration("14 days"), FixedDays(14))
        self.assertEqual(load_duration("for 5 days, then 3"), FixedDays(5))

    def test_lenient_loader_falls_back_to_ongoing(self):
        self.assertEqual(load_duration("until further notice"), ONGOING)
        m = _med(duration=load_duration("as needed"))
        self.assertTrue(is_scheduled(m, date(2030, 1, 1)))

    def test_lenient_loader_zero_days_is_never_scheduled(self):
        d = load_duration("0 days")
        self.assertIsInstance(d, Lapsed)
        m = _med(duration=d)
        self.assertFalse(is_scheduled(m, date(2024, 1, 1)))
        self.assertFalse(is_scheduled(m, date(2030, 1, 1)))
        self.assertEqual(scheduled_times_for(m, date(2024, 1, 1)), [])

    def test_lenient_loader_keeps_stored_text(self):
        for text in ("as needed", "2 weeks", "0 days", "30 days", "Ongoing"):
            self.assertEqual(str(load_duration(text)), text)
        self.assertEqual(load_duration("2 weeks"), FixedDays(2))

    def test_serialized_form(self):
        self.assertEqual(str(ONGOING), "Ongoing")
        self.assertEqual(str(FixedDays(30)), "30 days")
        self.assertEqual(load_duration(str(FixedDays(30))), FixedDays(30))


class TestSchedule(unittest.TestCase):
    def test_not_scheduled_before_start(self):
        m = _med(start=datetime(2024, 3, 10, 18, 30))
        self.assertFalse(is_scheduled(m, date(2024, 3, 9)))
        self.assertTrue(is_scheduled(m, datetime(2024, 3, 10, 6, 0)))

    def test_ongoing_has_no_end(self):
        m = _med(duration=ONGOING)
        for d in (date(2024, 1, 1), date(2024, 2, 29), date(2031, 12, 31)):
            self.assertTrue(is_scheduled(m, d))

    def test_fixed_window_counts_start_day(self):
        m = _med(duration=FixedDays(30))
        self.assertTrue(is_scheduled(m, date(2024, 1, 30)))
        self.assertFalse(is_scheduled(m, date(2024, 1, 31)))
        self.assertEqual(m.end_date(), date(2024, 1, 30))

    def test_window_crosses_month_boundary(self):
        m = _med(start=datetime(2024, 1, 30), duration=FixedDays(3))
        self.assertTrue(is_scheduled(m, date(2024, 2, 1)))
        self.assertFalse(is_scheduled(m, date(2024, 2, 2)))

    def test_single_day(self):
        m = _med(duration=FixedDays(1))
        self.assertTrue(is_scheduled(m, datetime(2024, 1, 1, 23, 59)))
        self.assertFalse(is_scheduled(m, date(2024, 1, 2)))

    def test_scheduled_times(self):
        m = _med(duration=FixedDays(2))
        self.assertEqual(scheduled_times_for(m, date(2024, 1, 2)), ["08:00", "20:00"])
        self.assertEqual(scheduled_times_for(m, date(2024, 1, 3)), [])
        self.assertEqual(scheduled_times_for(m, date(2023, 12, 31)), [])

    def test_scheduled_days_in_month(self):
        meds = [
            _med(start=datetime(2024, 2, 27), duration=FixedDays(5)),
            _med(start=datetime(2024, 3, 30), duration=ONGOING),
        ]
        days = scheduled_days_in_month(meds, 2024, 3)
        self.assertEqual(days, [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 30), date(2024, 3, 31)])
        self.assertEqual(scheduled_days_in_month(meds, 2024, 1), [])

    def test_agenda_marks_taken(self):
        a = _med(name="A")
        b = _med(name="B")
        c = _med(name="C", start=datetime(2024, 6, 1))
        history = [
            DoseHistory(medication_id=a.id, timestamp=datetime(2024, 5, 2, 8, 5), taken=True),
            DoseHistory(medication_id=b.id, timestamp=datetime(2024, 5, 2, 8, 5), taken=False),
            DoseHistory(medication_id=b.id, timestamp=datetime(2024, 5, 1, 8, 5), taken=True),
        ]
        items = agenda_for([a, b, c], history, date(2024, 5, 2))
        self.assertEqual([(i.medication.name, i.taken) for i in items], [("A", True), ("B", False)])
        self.assertEqual(len(doses_on(history, date(2024, 5, 2))), 2)


class TestRepository(unittest.TestCase):
    def setUp(self):
        self.store = MemoryStore()
        self.repo = MedicationRepository(self.store)

    def test_empty_store_lists_nothing(self):
        self.assertEqual(_run(self.repo.list_medications()), [])
        self.assertEqual(_run(self.repo.list_dose_history()), [])

    def test_add_then_list_roundtrip(self):
        m = _med(color="#E91E63", reminder_enabled=True, refill_at=5, refill_reminder=True,
                 last_refill_date=datetime(2023, 12, 20, 9, 15))
        n = _med(name="Vitamin D", duration=FixedDays(90))

        async def scenario():
            await self.repo.add_medication(m)
            before = len(await self.repo.list_medications())
            await self.repo.add_medication(n)
            meds = await self.repo.list_medications()
            self.assertEqual(len(meds), before + 1)
            self.assertEqual(meds, [m, n])
            self.assertIsNone(meds[1].last_refill_date)

        _run(scenario())
        stored = json.loads(_run(self.store.get(MEDICATIONS_KEY)))
        self.assertEqual(stored[0]["startDate"], "2024-01-01T00:00:00")
        self.assertEqual(stored[0]["duration"], "Ongoing")
        self.assertEqual(stored[1]["duration"], "90 days")
        self.assertNotIn("lastRefillDate", stored[1])

    def test_update_and_missing_update(self):
        m = _med()

        async def scenario():
            await self.repo.add_medication(m)
            m.dosage = "200mg"
            self.assertTrue(await self.repo.update_medication(m))
            ghost = _med(name="Ghost")
            self.assertFalse(await self.repo.update_medication(ghost))
            meds = await self.repo.list_medications()
            self.assertEqual([x.dosage for x in meds], ["200mg"])

        _run(scenario())

    def test_delete_keeps_others_and_history(self):
        a, b = _med(name="A"), _med(name="B")

        async def scenario():
            await self.repo.add_medication(a)
            await self.repo.add_medication(b)
            await self.repo.record_dose(a.id, True, datetime(2024, 1, 2, 8, 0))
            await self.repo.delete_medication(a.id)
            meds = await self.repo.list_medications()
            self.assertEqual([m.id for m in meds], [b.id])
            self.assertEqual(meds[0], b)
            history = await self.repo.list_dose_history()
            self.assertEqual([h.medication_id for h in history], [a.id])

        _run(scenario())

    def test_supply_never_goes_negative(self):
        m = _med(supply=1)

        async def scenario():
            await self.repo.add_medication(m)
            await self.repo.record_dose(m.id, True, datetime(2024, 1, 1, 8, 0))
            self.assertEqual((await self.repo.get_medication(m.id)).current_supply, 0)
            await self.repo.record_dose(m.id, True, datetime(2024, 1, 1, 20, 0))
            self.assertEqual((await self.repo.get_medication(m.id)).current_supply, 0)
            self.assertEqual(len(await self.repo.list_dose_history()), 2)

        _run(scenario())

    def test_skip_does_not_touch_supply(self):
        m = _med(supply=3)

        async def scenario():
            await self.repo.add_medication(m)
            dose = await self.repo.record_dose(m.id, False, "2024-01-01T08:00:00.000Z")
            self.assertFalse(dose.taken)
            self.assertEqual((await self.repo.get_medication(m.id)).current_supply, 3)

        _run(scenario())

    def test_dose_for_unknown_medication_is_logged(self):
        async def scenario():
            dose = await self.repo.record_dose("nope", True)
            history = await self.repo.list_dose_history()
            self.assertEqual(history, [dose])

        _run(scenario())

    def test_dose_ids_are_unique(self):
        async def scenario():
            doses = [await self.repo.record_dose("x", False) for _ in range(50)]
            self.assertEqual(len({d.id for d in doses}), 50)

        _run(scenario())

    def test_concurrent_doses_do_not_lose_updates(self):
        repo = MedicationRepository(SlowStore())
        m = _med(supply=2)

        async def scenario():
            await repo.add_medication(m)
            await asyncio.gather(
                repo.record_dose(m.id, True, datetime(2024, 1, 1, 8, 0)),
                repo.record_dose(m.id, True, datetime(2024, 1, 1, 8, 0)),
            )
            self.assertEqual((await repo.get_medication(m.id)).current_supply, 0)
            self.assertEqual(len(await repo.list_dose_history()), 2)

        _run(scenario())

    def test_concurrent_adds_keep_every_medication(self):
        repo = MedicationRepository(SlowStore())
        meds = [_med(name=f"M{i}") for i in range(5)]

        async def scenario():
            await asyncio.gather(*(repo.add_medication(m) for m in meds))
            self.assertEqual(len(await repo.list_medications()), 5)

        _run(scenario())

    def test_todays_doses(self):
        now = datetime(2024, 3, 5, 12, 0)

        async def scenario():
            await self.repo.record_dose("a", True, datetime(2024, 3, 5, 0, 0))
            await self.repo.record_dose("a", False, datetime(2024, 3, 5, 23, 59))
            await self.repo.record_dose("a", True, datetime(2024, 3, 4, 23, 59))
            today = await self.repo.list_todays_doses(now=now)
            self.assertEqual(len(today), 2)

        _run(scenario())

    def test_clear_date_range_is_inclusive(self):
        inside = [_med(name="first", start=datetime(2024, 1, 1)),
                  _med(name="mid", start=datetime(2024, 1, 15)),
                  _med(name="last", start=datetime(2024, 1, 31, 20, 0))]
        outside = [_med(name="before", start=datetime(2023, 12, 31, 23, 59)),
                   _med(name="after", start=datetime(2024, 2, 1))]

        async def scenario():
            for m in inside + outside:
                await self.repo.add_medication(m)
            for ts in (datetime(2024, 1, 1), datetime(2024, 1, 31, 23, 0),
                       datetime(2023, 12, 31, 22, 0), datetime(2024, 2, 1, 0, 0)):
                await self.repo.record_dose("x", True, ts)
            await self.repo.clear_data_for_date_range(date(2024, 1, 1), date(2024, 1, 31))
            meds = await self.repo.list_medications()
            self.assertEqual(sorted(m.name for m in meds), ["after", "before"])
            history = await self.repo.list_dose_history()
            self.assertEqual(sorted(h.timestamp for h in history),
                             [datetime(2023, 12, 31, 22, 0), datetime(2024, 2, 1, 0, 0)])

        _run(scenario())

    def test_clear_date_range_with_datetime_bounds(self):
        async def scenario():
            await self.repo.record_dose("x", True, datetime(2024, 1, 1, 9, 0))
            await self.repo.record_dose("x", True, datetime(2024, 1, 1, 10, 0))
            await self.repo.record_dose("x", True, datetime(2024, 1, 1, 11, 0))
            await self.repo.clear_data_for_date_range(datetime(2024, 1, 1, 9, 0), datetime(2024, 1, 1, 10, 0))
            history = await self.repo.list_dose_history()
            self.assertEqual([h.timestamp.hour for h in history], [11])

        _run(scenario())

    def test_clear_old_data(self):
        async def scenario():
            await self.repo.add_medication(_med(name="old", start=datetime(2024, 1, 9, 23, 0)))
            await self.repo.add_medication(_med(name="new", start=datetime(2024, 1, 10)))
            await self.repo.record_dose("x", True, datetime(2024, 1, 9, 12, 0))
            await self.repo.record_dose("x", True, datetime(2024, 1, 10, 0, 0))
            await self.repo.clear_old_data(date(2024, 1, 10))
            self.assertEqual([m.name for m in await self.repo.list_medications()], ["new"])
            self.assertEqual([h.timestamp for h in await self.repo.list_dose_history()],
                             [datetime(2024, 1, 10, 0, 0)])

        _run(scenario())

    def test_clear_all_data(self):
        async def scenario():
            await self.repo.add_medication(_med())
            await self.repo.record_dose("x", True)
            await self.repo.clear_all_data()
            self.assertIsNone(await self.store.get(MEDICATIONS_KEY))
            self.assertIsNone(await self.store.get(DOSE_HISTORY_KEY))
            self.assertEqual(await self.repo.list_medications(), [])

        _run(scenario())

    def test_refill(self):
        m = _med(supply=2, total=30)

        async def scenario():
            await self.repo.add_medication(m)
            when = datetime(2024, 2, 1, 10, 0)
            med = await self.repo.record_refill(m.id, amount=40, when=when)
            self.assertEqual(med.current_supply, 30)
            self.assertEqual(med.last_refill_date, when)
            stored = await self.repo.get_medication(m.id)
            self.assertEqual(stored.last_refill_date, when)
            self.assertIsNone(await self.repo.record_refill("nope"))

        _run(scenario())

    def test_needs_refill(self):
        m = _med(supply=5, refill_at=5, refill_reminder=True)
        self.assertTrue(m.needs_refill())
        m.current_supply = 6
        self.assertFalse(m.needs_refill())
        m.refill_reminder = False
        m.current_supply = 0
        self.assertFalse(m.needs_refill())

    def test_legacy_blob(self):
        legacy = [{
            "id": "k3j2h1g0f", "name": "Ibuprofen", "dosage": "200mg", "times": ["09:00"],
            "startDate": "2024-04-01T00:00:00.000Z", "duration": "as needed", "color": "#2196F3",
            "reminderEnabled": True, "reminderRepeat": False, "repeatCount": 1,
            "currentSupply": 12, "totalSupply": 24, "refillAt": 4, "refillReminder": False,
        }]
        repo = MedicationRepository(MemoryStore({MEDICATIONS_KEY: json.dumps(legacy)}))
        meds = _run(repo.list_medications())
        self.assertEqual(len(meds), 1)
        self.assertEqual(meds[0].duration, ONGOING)
        self.assertEqual(meds[0].id, "k3j2h1g0f")
        self.assertIsNone(meds[0].last_refill_date)

    def test_legacy_duration_text_survives_a_rewrite(self):
        legacy = [
            {"id": "a1", "name": "Ibuprofen", "startDate": "2024-04-01T00:00:00", "duration": "as needed"},
            {"id": "b2", "name": "Prednisone", "startDate": "2024-04-01T00:00:00", "duration": "2 weeks"},
        ]
        store = MemoryStore({MEDICATIONS_KEY: json.dumps(legacy)})
        repo = MedicationRepository(store)

        async def scenario():
            await repo.add_medication(_med(name="Vitamin C"))
            return json.loads(await store.get(MEDICATIONS_KEY))

        stored = _run(scenario())
        self.assertEqual([m["duration"] for m in stored], ["as needed", "2 weeks", "Ongoing"])

    def test_dose_is_not_saved_when_medications_are_unreadable(self):
        store = MemoryStore({MEDICATIONS_KEY: "{not json"})
        repo = MedicationRepository(store)
        with self.assertRaises(StoreReadError):
            _run(repo.record_dose("a", True, datetime(2024, 1, 1, 8, 0)))
        self.assertIsNone(_run(store.get(DOSE_HISTORY_KEY)))
        self.assertEqual(_run(store.get(MEDICATIONS_KEY)), "{not json")

        dose = _run(repo.record_dose("a", False, datetime(2024, 1, 1, 8, 0)))
        self.assertEqual(_run(repo.list_dose_history()), [dose])


class TestRepositoryFailures(unittest.TestCase):
    def setUp(self):
        self.store = FailingStore()
        self.repo = MedicationRepository(self.store)

    def test_read_failure_degrades_to_empty(self):
        _run(self.repo.add_medication(_med()))
        self.store.fail_reads = True
        self.assertEqual(_run(self.repo.list_medications()), [])
        self.assertEqual(_run(self.repo.list_dose_history()), [])
        self.assertEqual(_run(self.repo.list_todays_doses()), [])
        self.assertIn("error reading @medications", ring_text())

    def test_malformed_blob_degrades_to_empty(self):
        _run(self.store.set(MEDICATIONS_KEY, "{not json"))
        _run(self.store.set(DOSE_HISTORY_KEY, json.dumps({"id": "x"})))
        self.assertEqual(_run(self.repo.list_medications()), [])
        self.assertEqual(_run(self.repo.list_dose_history()), [])

    def test_mutation_does_not_overwrite_unreadable_blob(self):
        _run(self.store.set(MEDICATIONS_KEY, "{not json"))
        with self.assertRaises(StoreReadError):
            _run(self.repo.add_medication(_med()))
        self.assertEqual(_run(self.store.get(MEDICATIONS_KEY)), "{not json")

    def test_write_failure_propagates(self):
        self.store.fail_writes = True
        with self.assertRaises(StoreWriteError):
            _run(self.repo.add_medication(_med()))
        with self.assertRaises(StoreWriteError):
            _run(self.repo.record_dose("x", True))
        with self.assertRaises(StoreWriteError):
            _run(self.repo.clear_all_data())
        with self.assertRaises(StoreWriteError):
            _run(self.repo.clear_old_data(date(2024, 1, 1)))

    def test_every_mutation_propagates_write_failure(self):
        m = _med(supply=3)
        _run(self.repo.add_medication(m))
        self.store.fail_writes = True
        m.dosage = "200mg"
        with self.assertRaises(StoreWriteError):
            _run(self.repo.update_medication(m))
        with self.assertRaises(StoreWriteError):
            _run(self.repo.delete_medication(m.id))
        with self.assertRaises(StoreWriteError):
            _run(self.repo.record_refill(m.id))
        with self.assertRaises(StoreWriteError):
            _run(self.repo.clear_data_for_date_range(date(2024, 1, 1), date(2024, 1, 31)))
        self.store.fail_writes = False
        meds = _run(self.repo.list_medications())
        self.assertEqual([(x.dosage, x.current_supply) for x in meds], [("100mg", 3)])


class TestCLI(unittest.TestCase):
    def setUp(self):
        self.td = tempfile.TemporaryDirectory()
        self.base = ["--data-dir", self.td.name]

    def tearDown(self):
        configure_logging(None)
        self.td.cleanup()

    def _cli(self, *args):
        out, err = io.StringIO(), io.StringIO()
        with redirect_stdout(out), redirect_stderr(err):
            code = cli.main(self.base + list(args))
        return code, out.getvalue(), err.getvalue()

    def test_add_take_list(self):
        start = (date.today() - timedelta(days=1)).isoformat()
        code, out, _ = self._cli("add", "--name", "Amoxicillin", "--dosage", "500mg", "--time", "20:00",
                                 "--time", "8:00", "--start", start, "--duration", "10 days", "--supply", "2")
        self.assertEqual(code, 0)
        med_id = out.strip()

        code, out, _ = self._cli("take", med_id)
        self.assertEqual(code, 0)
        self.assertIn("supply 1/2", out)

        code, out, _ = self._cli("list")
        self.assertIn("Amoxicillin (500mg)  [08:00, 20:00]", out)
        self.assertIn("1 medications", out)

        code, out, _ = self._cli("day")
        self.assertIn("Taken", out)

        code, out, _ = self._cli("today")
        self.assertIn("1 doses logged today", out)

        self.assertTrue((Path(self.td.name) / "store" / "_medications.json.aes").exists())
        self.assertIn("command=take", (Path(self.td.name) / "app.log").read_text(encoding="utf-8"))

    def test_take_reports_when_medication_vanishes(self):
        class VanishingRepo:
            def __init__(self):
                self.calls = 0

            async def get_medication(self, medication_id):
                self.calls += 1
                return _med(name="Zinc") if self.calls == 1 else None

            async def record_dose(self, medication_id, taken, timestamp=None):
                return DoseHistory(medication_id=medication_id, timestamp=datetime(2024, 1, 1), taken=taken)

        args = cli.build_parser().parse_args(["take", "whatever"])
        out = io.StringIO()
        with redirect_stdout(out):
            code = _run(cli.cmd_dose(VanishingRepo(), args))
        self.assertEqual(code, 0)
        self.assertEqual(out.getvalue().strip(), "Zinc: taken")

    def test_unknown_medication(self):
        code, _, err = self._cli("take", "missing")
        self.assertEqual(code, 1)
        self.assertIn("no medication", err)

    def test_bad_duration_is_rejected(self):
        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit) as ctx:
                cli.main(self.base + ["add", "--name", "X", "--duration", "forever"])
        self.assertEqual(ctx.exception.code, 2)

    def test_calendar_marks_scheduled_days(self):
        self._cli("add", "--name", "Iron", "--start", "2024-02-28", "--duration", "3 days")
        code, out, _ = self._cli("calendar", "--month", "2024-03")
        self.assertEqual(code, 0)
        self.assertIn(" 1*", out)
        self.assertNotIn(" 2*", out)


if __name__ == "__main__":
    unittest.main(verbosity=2)
