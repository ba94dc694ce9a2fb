import json
import logging
import sqlite3
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from threading import Lock
from typing import Callable

from rgs.casino.outcome import MONEY, MathModel, fmt_decimal, money, pick_tier, render_symbols, is_losing
from rgs.database import connect, setup
from rgs.errors import ConfigurationError, ConflictError, PersistenceError, ValidationError


logger = logging.getLogger(__name__)

OUTCOME_WIN = "win"
OUTCOME_LOSE = "lose"


@dataclass
class SettlementResult:
    round_id: str
    game: str
    outcome: str
    stake: Decimal
    currency: str
    payout: Decimal
    balance_delta: Decimal
    settled_at: float
    tier: str = ""
    symbols: list[str] = field(default_factory=list)
    step: int | None = None
    multiplier: Decimal | None = None
    crash_step: int | None = None

    def detail(self) -> dict:
        out: dict = {}
        if self.symbols:
            out["symbols"] = self.symbols[:]
        if self.step is not None:
            out["step"] = int(self.step)
        if self.multiplier is not None:
            out["multiplier"] = fmt_decimal(self.multiplier)
        if self.crash_step is not None:
            out["crash_step"] = int(self.crash_step)
        return out

    def to_dict(self) -> dict:
        out = {
            "round_id": self.round_id,
            "game": self.game,
            "outcome": self.outcome,
            "tier": self.tier,
            "stake": float(self.stake),
            "currency": self.currency,
            "payout": float(self.payout),
            "balance_delta": float(self.balance_delta),
            "settled_at": float(self.settled_at),
        }
        detail = self.detail()
        if "multiplier" in detail:
            detail["multiplier"] = float(self.multiplier)
        out.update(detail)
        return out

    @classmethod
    def from_row(cls, row: tuple) -> "SettlementResult":
        round_id, game, outcome, tier, stake, currency, payout, delta, detail_raw, settled_at = row
        detail = json.loads(detail_raw or "{}")
        return cls(
            round_id=round_id,
            game=game,
            outcome=outcome,
            tier=tier or "",
            stake=Decimal(stake),
            currency=currency,
            payout=Decimal(payout),
            balance_delta=Decimal(delta),
            settled_at=float(settled_at),
            symbols=list(detail.get("symbols") or []),
            step=detail.get("step"),
            multiplier=Decimal(detail["multiplier"]) if "multiplier" in detail else None,
            crash_step=detail.get("crash_step"),
        )


class SettlementLog:
    """Append-only audit log of settled rounds in ``rounds.db``.

    ``lock`` is shared by every ledger writing to the log, so the round id namespace
    has one writer at a time across instant and crash rounds.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.lock = Lock()
        setup(self.root)

    def open(self) -> sqlite3.Connection:
        try:
            return connect(self.root, "rounds")
        except (sqlite3.Error, OSError) as exc:
            raise PersistenceError(f"could not open round store: {exc}") from exc

    def get(self, round_id: str, db: sqlite3.Connection | None = None) -> SettlementResult | None:
        own = db is None
        if own:
            db = self.open()
        try:
            row = db.execute(
                """
                SELECT round_id, game, outcome, tier, stake, currency, payout, balance_delta, detail, settled_at
                FROM round_results WHERE round_id = ? ORDER BY id DESC LIMIT 1
                """,
                (round_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not read round {round_id}: {exc}") from exc
        finally:
            if own:
                db.close()
        return SettlementResult.from_row(row) if row else None

    def is_open(self, round_id: str) -> bool:
        """True while ``round_id`` sits in the crash working set."""
        db = self.open()
        try:
            row = db.execute("SELECT 1 FROM crash_rounds WHERE round_id = ?", (round_id,)).fetchone()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not read round {round_id}: {exc}") from exc
        finally:
            db.close()
        return row is not None

    def insert(self, db: sqlite3.Connection, result: SettlementResult) -> None:
        db.execute(
            """
            INSERT INTO round_results
                (round_id, game, outcome, tier, stake, currency, payout, balance_delta, detail, settled_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.round_id,
                result.game,
                result.outcome,
                result.tier,
                str(result.stake),
                result.currency,
                str(result.payout),
                str(result.balance_delta),
                json.dumps(result.detail(), sort_keys=True),
                float(result.settled_at),
            ),
        )

    def append(self, result: SettlementResult) -> None:
        db = self.open()
        try:
            db.execute("BEGIN IMMEDIATE")
            self.insert(db, result)
            db.execute("COMMIT")
        except sqlite3.Error as exc:
            if db.in_transaction:
                db.execute("ROLLBACK")
            raise PersistenceError(f"could not record round {result.round_id}: {exc}") from exc
        finally:
            db.close()

    def recent(self, limit: int = 10) -> list[SettlementResult]:
        db = self.open()
        try:
            rows = db.execute(
                """
                SELECT round_id, game, outcome, tier, stake, currency, payout, balance_delta, detail, settled_at
                FROM round_results ORDER BY id DESC LIMIT ?
                """,
                (max(1, int(limit)),),
            ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"could not read recent rounds: {exc}") from exc
        finally:
            db.close()
        return [SettlementResult.from_row(r) for r in rows]


def validate_round(round_id: str, stake) -> tuple[str, Decimal]:
    rid = str(round_id or "").strip()
    if not rid:
        raise ValidationError("round id required", "missing_round_id")
    if len(rid) > 512:
        raise ValidationError("round id too long", "invalid_round_id")
    if not isinstance(stake, Decimal):
        raise ValidationError("stake must be a decimal amount", "invalid_amount")
    if not stake.is_finite() or stake <= 0:
        raise ValidationError("stake must be positive", "invalid_amount")
    try:
        whole_cents = stake == stake.quantize(MONEY)
    except InvalidOperation:
        whole_cents = False
    if not whole_cents:
        raise ValidationError("stake must be a whole number of cents", "invalid_amount")
    return rid, stake


class InstantLedger:
    def __init__(self, log: SettlementLog, clock: Callable[[], float] = time.time) -> None:
        self._log = log
        self._clock = clock

    def replay(self, round_id: str) -> SettlementResult | None:
        rid = str(round_id or "").strip()
        if not rid:
            return None
        return self._log.get(rid)

    def settle(self, round_id: str, stake: Decimal, currency: str, model: MathModel | None) -> tuple[SettlementResult, bool]:
        """Settle a one-shot round, or hand back the result already recorded for it.

        The second element is True when the result is a replay. Nothing is drawn for a
        replayed round id, whatever stake the retry carries.
        """
        rid, bet = validate_round(round_id, stake)
        with self._log.lock:
            existing = self._log.get(rid)
            if existing is not None:
                return existing, True
            if self._log.is_open(rid):
                raise ConflictError(f"round {rid} is an open crash round", "round_exists")
            tier, ok = pick_tier(model)
            if not ok:
                model_id = model.model_id if model is not None else ""
                raise ConfigurationError(f"math model {model_id or '?'} has no drawable tier")
            payout = money(bet * tier.multiplier)
            result = SettlementResult(
                round_id=rid,
                game=model.model_id,
                outcome=OUTCOME_LOSE if is_losing(tier) else OUTCOME_WIN,
                tier=tier.tier,
                stake=bet,
                currency=currency,
                payout=payout,
                balance_delta=payout - bet,
                settled_at=self._clock(),
                symbols=render_symbols(tier),
            )
            self._log.append(result)
        logger.info("settled round %s tier=%s delta=%s", rid, tier.tier, result.balance_delta)
        return result, False
