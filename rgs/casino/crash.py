import logging
import random
import sqlite3
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable

from rgs.casino.ledger import OUTCOME_LOSE, OUTCOME_WIN, SettlementLog, SettlementResult, validate_round
from rgs.casino.outcome import LOSE_TIER, money
from rgs.errors import ConflictError, NotFoundError, PersistenceError, ValidationError


logger = logging.getLogger(__name__)

GAME = "crash"
STEP_INCREMENT = Decimal("0.01")
STEP_MS = 100
# multipliers 1.10 .. 5.00
CRASH_STEP_MIN = 10
CRASH_STEP_MAX = 400
CASHOUT_TIER = "CASHOUT"
RNG = random.SystemRandom()


def multiplier(step: int) -> Decimal:
    return Decimal(1) + Decimal(max(0, int(step))) * STEP_INCREMENT


def elapsed_step(started_at: float, now: float, step_ms: int = STEP_MS) -> int:
    elapsed_ms = round((float(now) - float(started_at)) * 1000.0, 3)
    return max(0, int(elapsed_ms // int(step_ms)))


def generate_crash_step() -> int:
    return RNG.randint(CRASH_STEP_MIN, CRASH_STEP_MAX)


@dataclass
class CrashRound:
    round_id: str
    stake: Decimal
    currency: str
    crash_step: int
    started_at: float

    def to_dict(self) -> dict:
        # crash_step stays server side while the round is open
        return {
            "round_id": self.round_id,
            "stake": float(self.stake),
            "currency": self.currency,
            "started_at": float(self.started_at),
            "started_at_ms": int(round(self.started_at * 1000)),
        }


class CrashLedger:
    """Open crash rounds plus their closing transition.

    A round is open while it sits in the working set (``crash_rounds``) and settled
    once its result is in the settlement log. Closing writes the result and drops the
    working-set row in one transaction.
    """

    def __init__(
        self,
        log: SettlementLog,
        step_ms: int = STEP_MS,
        clock: Callable[[], float] = time.time,
        crash_step_source: Callable[[], int] = generate_crash_step,
    ) -> None:
        if int(step_ms) <= 0:
            raise ValueError("step_ms must be positive")
        self._log = log
        self._step_ms = int(step_ms)
        self._clock = clock
        self._crash_step_source = crash_step_source
        self._open: dict[str, CrashRound] = {}
        self._load()

    def _load(self) -> None:
        db = self._log.open()
        try:
            rows = db.execute(
                "SELECT round_id, stake, currency, crash_step, started_at FROM crash_rounds"
            ).fetchall()
        finally:
            db.close()
        with self._log.lock:
            for rid, stake, currency, crash_step, started_at in rows:
                self._open[rid] = CrashRound(
                    round_id=rid,
                    stake=Decimal(stake),
                    currency=currency,
                    crash_step=int(crash_step),
                    started_at=float(started_at),
                )
        if rows:
            logger.info("restored %d open crash rounds", len(rows))

    def current_step(self, rnd: CrashRound) -> int:
        return elapsed_step(rnd.started_at, self._clock(), self._step_ms)

    def get(self, round_id: str) -> CrashRound | None:
        with self._log.lock:
            return self._open.get(str(round_id or "").strip())

    def start(self, round_id: str, stake: Decimal, currency: str) -> CrashRound:
        rid, bet = validate_round(round_id, stake)
        with self._log.lock:
            if rid in self._open or self._log.get(rid) is not None:
                raise ConflictError(f"round {rid} already exists", "round_exists")
            crash_step = int(self._crash_step_source())
            rnd = CrashRound(round_id=rid, stake=bet, currency=currency, crash_step=crash_step, started_at=self._clock())
            db = self._log.open()
            try:
                db.execute("BEGIN IMMEDIATE")
                db.execute(
                    "INSERT INTO crash_rounds (round_id, stake, currency, crash_step, started_at) VALUES (?, ?, ?, ?, ?)",
                    (rid, str(bet), currency, crash_step, float(rnd.started_at)),
                )
                db.execute("COMMIT")
            except sqlite3.Error as exc:
                if db.in_transaction:
                    db.execute("ROLLBACK")
                raise PersistenceError(f"could not open crash round {rid}: {exc}") from exc
            finally:
                db.close()
            self._open[rid] = rnd
        logger.info("crash round %s started", rid)
        return rnd

    def _close(self, rnd: CrashRound, step: int, won: bool) -> SettlementResult:
        # caller holds self._log.lock
        if won:
            mult = multiplier(step)
            payout = money(rnd.stake * mult)
        else:
            mult = multiplier(rnd.crash_step)
            payout = Decimal("0.00")
        result = SettlementResult(
            round_id=rnd.round_id,
            game=GAME,
            outcome=OUTCOME_WIN if won else OUTCOME_LOSE,
            tier=CASHOUT_TIER if won else LOSE_TIER,
            stake=rnd.stake,
            currency=rnd.currency,
            payout=payout,
            balance_delta=payout - rnd.stake,
            settled_at=self._clock(),
            step=int(step),
            multiplier=mult,
            crash_step=rnd.crash_step,
        )
        db = self._log.open()
        try:
            db.execute("BEGIN IMMEDIATE")
            self._log.insert(db, result)
            db.execute("DELETE FROM crash_rounds WHERE round_id = ?", (rnd.round_id,))
            db.execute("COMMIT")
        except sqlite3.Error as exc:
            if db.in_transaction:
                db.execute("ROLLBACK")
            raise PersistenceError(f"could not settle crash round {rnd.round_id}: {exc}") from exc
        finally:
            db.close()
        self._open.pop(rnd.round_id, None)
        logger.info(
            "crash round %s closed outcome=%s step=%d crash_step=%d",
            rnd.round_id, result.outcome, step, rnd.crash_step,
        )
        return result

    def _settled_or_missing(self, rid: str) -> ConflictError | NotFoundError:
        recorded = self._log.get(rid)
        if recorded is not None:
            return ConflictError(f"round {rid} already settled", "round_settled", result=recorded)
        return NotFoundError(f"round {rid} not found")

    def cashout(self, round_id: str, claimed_step: int) -> SettlementResult:
        rid = str(round_id or "").strip()
        if not rid:
            raise ValidationError("round id required", "missing_round_id")
        if isinstance(claimed_step, bool) or not isinstance(claimed_step, int):
            raise ValidationError("step must be an integer", "invalid_step")
        with self._log.lock:
            rnd = self._open.get(rid)
            if rnd is None:
                raise self._settled_or_missing(rid)
            if claimed_step > self.current_step(rnd):
                raise ValidationError("cannot cash out in the future", "invalid_step")
            step = max(0, claimed_step)
            # landing on the crash step itself is a loss
            if step >= rnd.crash_step:
                return self._close(rnd, step, won=False)
            return self._close(rnd, step, won=True)

    def status(self, round_id: str) -> dict:
        rid = str(round_id or "").strip()
        if not rid:
            raise ValidationError("round id required", "missing_round_id")
        with self._log.lock:
            rnd = self._open.get(rid)
            if rnd is None:
                recorded = self._settled_or_missing(rid)
                if isinstance(recorded, NotFoundError):
                    raise recorded
                return self._settled_view(recorded.result)
            step = self.current_step(rnd)
            if step >= rnd.crash_step:
                return self._settled_view(self._close(rnd, step, won=False))
            return {
                "round_id": rid,
                "current_step": step,
                "multiplier": float(multiplier(step)),
                "crashed": False,
                "settled": False,
            }

    def _settled_view(self, result: SettlementResult) -> dict:
        crashed = result.outcome == OUTCOME_LOSE
        step = int(result.step or 0)
        out = {
            "round_id": result.round_id,
            "current_step": step,
            "multiplier": float(multiplier(step)),
            "crashed": crashed,
            "settled": True,
            "result": result.to_dict(),
        }
        if crashed and result.crash_step is not None:
            out["crash_step"] = int(result.crash_step)
            out["crash_multiplier"] = float(multiplier(result.crash_step))
        return out
