import sqlite3
import tempfile
import threading
import unittest
from decimal import Decimal
from pathlib import Path
from unittest.mock import patch

from rgs.casino.crash import (
    CRASH_STEP_MAX,
    CRASH_STEP_MIN,
    CrashLedger,
    elapsed_step,
    generate_crash_step,
    multiplier,
)
from rgs.casino.ledger import SettlementLog
from rgs.database import connect
from rgs.errors import ConflictError, NotFoundError, PersistenceError, ValidationError


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCrashTimer(unittest.TestCase):

    def test_multiplier_schedule(self):
        self.assertEqual(multiplier(0), Decimal("1.00"))
        self.assertEqual(multiplier(30), Decimal("1.30"))
        self.assertEqual(multiplier(400), Decimal("5.00"))
        self.assertEqual(multiplier(-4), Decimal("1"))

    def test_elapsed_step(self):
        self.assertEqual(elapsed_step(1000.0, 1000.0), 0)
        self.assertEqual(elapsed_step(1000.0, 1000.099), 0)
        self.assertEqual(elapsed_step(1000.0, 1000.1), 1)
        self.assertEqual(elapsed_step(1000.0, 1003.0), 30)
        self.assertEqual(elapsed_step(1000.0, 1003.0, step_ms=250), 12)
        self.assertEqual(elapsed_step(1000.0, 999.0), 0)

    def test_crash_step_range(self):
        seen = {generate_crash_step() for _ in range(5_000)}
        self.assertTrue(all(CRASH_STEP_MIN <= s <= CRASH_STEP_MAX for s in seen))
        self.assertGreater(len(seen), 100)


class CrashCase(unittest.TestCase):
    crash_step = 50

    def setUp(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        self.root = Path(tmp.name)
        self.clock = FakeClock()
        self.log = SettlementLog(self.root)
        self.ledger = self.new_ledger()

    def new_ledger(self) -> CrashLedger:
        return CrashLedger(self.log, step_ms=100, clock=self.clock, crash_step_source=lambda: self.crash_step)

    def settled_rows(self, round_id: str) -> int:
        db = connect(self.root, "rounds")
        try:
            return db.execute("SELECT COUNT(*) FROM round_results WHERE round_id = ?", (round_id,)).fetchone()[0]
        finally:
            db.close()


class TestCrashLedger(CrashCase):

    def test_start_hides_crash_step(self):
        rnd = self.ledger.start("c-1", Decimal("10"), "USD")
        self.assertEqual(rnd.crash_step, 50)
        self.assertNotIn("crash_step", rnd.to_dict())
        self.assertEqual(rnd.to_dict()["started_at_ms"], 1_000_000)

    def test_start_rejects_existing_round(self):
        self.ledger.start("c-2", Decimal("10"), "USD")
        with self.assertRaises(ConflictError):
            self.ledger.start("c-2", Decimal("10"), "USD")
        self.clock.advance(1.0)
        self.ledger.cashout("c-2", 5)
        with self.assertRaises(ConflictError):
            self.ledger.start("c-2", Decimal("10"), "USD")

    def test_cashout_before_crash_wins(self):
        self.ledger.start("c-3", Decimal("10"), "USD")
        self.clock.advance(3.0)
        result = self.ledger.cashout("c-3", 30)
        self.assertEqual(result.outcome, "win")
        self.assertEqual(result.payout, Decimal("13.00"))
        self.assertEqual(result.balance_delta, Decimal("3.00"))
        self.assertIsNone(self.ledger.get("c-3"))

    def test_cashout_after_crash_loses(self):
        self.ledger.start("c-4", Decimal("10"), "USD")
        self.clock.advance(5.5)
        result = self.ledger.cashout("c-4", 55)
        self.assertEqual(result.outcome, "lose")
        self.assertEqual(result.payout, Decimal("0.00"))
        self.assertEqual(result.balance_delta, Decimal("-10"))
        self.assertEqual(result.crash_step, 50)

    def test_cashout_on_crash_step_loses(self):
        self.ledger.start("c-5", Decimal("10"), "USD")
        self.clock.advance(5.0)
        result = self.ledger.cashout("c-5", 50)
        self.assertEqual(result.outcome, "lose")
        self.assertEqual(result.balance_delta, Decimal("-10"))

    def test_cashout_one_step_before_crash_wins(self):
        self.ledger.start("c-6", Decimal("2"), "USD")
        self.clock.advance(5.0)
        result = self.ledger.cashout("c-6", 49)
        self.assertEqual(result.outcome, "win")
        self.assertEqual(result.payout, Decimal("2.98"))

    def test_future_step_is_rejected_and_round_stays_open(self):
        self.ledger.start("c-7", Decimal("10"), "USD")
        self.clock.advance(1.0)
        with self.assertRaises(ValidationError):
            self.ledger.cashout("c-7", 11)
        self.assertIsNotNone(self.ledger.get("c-7"))
        self.assertEqual(self.ledger.cashout("c-7", 10).payout, Decimal("11.00"))

    def test_negative_step_counts_as_zero(self):
        self.ledger.start("c-8", Decimal("10"), "USD")
        result = self.ledger.cashout("c-8", -3)
        self.assertEqual(result.step, 0)
        self.assertEqual(result.payout, Decimal("10.00"))
        self.assertEqual(result.balance_delta, Decimal("0.00"))

    def test_unknown_round(self):
        with self.assertRaises(NotFoundError):
            self.ledger.cashout("nope", 1)
        with self.assertRaises(NotFoundError):
            self.ledger.status("nope")

    def test_second_cashout_is_conflict_with_recorded_result(self):
        self.ledger.start("c-9", Decimal("10"), "USD")
        self.clock.advance(2.0)
        first = self.ledger.cashout("c-9", 20)
        self.clock.advance(0.5)
        with self.assertRaises(ConflictError) as ctx:
            self.ledger.cashout("c-9", 25)
        self.assertEqual(ctx.exception.result.to_dict(), first.to_dict())
        self.assertEqual(self.settled_rows("c-9"), 1)

    def test_status_while_running(self):
        self.ledger.start("c-10", Decimal("10"), "USD")
        self.clock.advance(1.2)
        state = self.ledger.status("c-10")
        self.assertEqual(state["current_step"], 12)
        self.assertAlmostEqual(state["multiplier"], 1.12)
        self.assertFalse(state["crashed"])
        self.assertNotIn("crash_step", state)

    def test_status_after_crash_settles_as_loss(self):
        self.ledger.start("c-11", Decimal("10"), "USD")
        self.clock.advance(6.0)
        state = self.ledger.status("c-11")
        self.assertTrue(state["crashed"])
        self.assertEqual(state["crash_step"], 50)
        self.assertAlmostEqual(state["crash_multiplier"], 1.5)
        self.assertEqual(state["result"]["balance_delta"], -10.0)
        with self.assertRaises(ConflictError) as ctx:
            self.ledger.cashout("c-11", 40)
        self.assertEqual(ctx.exception.result.outcome, "lose")
        self.assertEqual(self.settled_rows("c-11"), 1)
        again = self.ledger.status("c-11")
        self.assertTrue(again["crashed"])
        self.assertTrue(again["settled"])

    def test_status_of_cashed_out_round(self):
        self.ledger.start("c-12", Decimal("10"), "USD")
        self.clock.advance(1.0)
        self.ledger.cashout("c-12", 10)
        self.clock.advance(30.0)
        state = self.ledger.status("c-12")
        self.assertFalse(state["crashed"])
        self.assertTrue(state["settled"])
        self.assertEqual(state["result"]["outcome"], "win")

    def test_concurrent_cashouts_settle_once(self):
        self.ledger.start("c-13", Decimal("10"), "USD")
        self.clock.advance(3.0)
        barrier = threading.Barrier(6)
        wins, conflicts = [], []

        def worker():
            barrier.wait()
            try:
                wins.append(self.ledger.cashout("c-13", 30))
            except ConflictError as exc:
                conflicts.append(exc.result)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(len(wins), 1)
        self.assertEqual(len(conflicts), 5)
        self.assertTrue(all(c.to_dict() == wins[0].to_dict() for c in conflicts))
        self.assertEqual(self.settled_rows("c-13"), 1)

    def test_cashout_and_status_race_settles_once(self):
        self.ledger.start("c-14", Decimal("10"), "USD")
        self.clock.advance(5.0)
        barrier = threading.Barrier(2)
        out = {}

        def cash():
            barrier.wait()
            try:
                out["cashout"] = self.ledger.cashout("c-14", 50)
            except ConflictError as exc:
                out["cashout"] = exc.result

        def poll():
            barrier.wait()
            out["status"] = self.ledger.status("c-14")

        threads = [threading.Thread(target=cash), threading.Thread(target=poll)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(self.settled_rows("c-14"), 1)
        self.assertEqual(out["cashout"].outcome, "lose")
        self.assertTrue(out["status"]["crashed"])

    def test_open_rounds_survive_restart(self):
        self.ledger.start("c-15", Decimal("10"), "USD")
        self.clock.advance(2.0)
        reborn = self.new_ledger()
        self.assertEqual(reborn.get("c-15").crash_step, 50)
        self.assertEqual(reborn.cashout("c-15", 20).payout, Decimal("12.00"))
        self.assertIsNone(self.new_ledger().get("c-15"))

    def test_unpolled_round_resolves_as_loss_on_next_touch(self):
        self.ledger.start("c-16", Decimal("10"), "USD")
        self.clock.advance(3600.0)
        reborn = self.new_ledger()
        self.assertTrue(reborn.status("c-16")["crashed"])

    def test_failed_close_keeps_round_open(self):
        self.ledger.start("c-17", Decimal("10"), "USD")
        self.clock.advance(1.0)
        with patch.object(self.log, "insert", side_effect=sqlite3.OperationalError("disk full")):
            with self.assertRaises(PersistenceError):
                self.ledger.cashout("c-17", 10)
        self.assertIsNotNone(self.ledger.get("c-17"))
        self.assertEqual(self.settled_rows("c-17"), 0)
        self.assertEqual(self.ledger.cashout("c-17", 10).outcome, "win")

    def test_non_integer_step(self):
        self.ledger.start("c-18", Decimal("10"), "USD")
        for bad in ("5", 1.5, True, None):
            with self.assertRaises(ValidationError):
                self.ledger.cashout("c-18", bad)


if __name__ == "__main__":
    unittest.main()
