import logging
import re
import time
from decimal import Decimal
from pathlib import Path
from typing import Callable

from rgs.casino.crash import STEP_MS, CrashLedger
from rgs.casino.ledger import OUTCOME_LOSE, OUTCOME_WIN, InstantLedger, SettlementLog, SettlementResult, validate_round
from rgs.casino.outcome import MathModel, compute_stats, content_hash, to_decimal
from rgs.casino.registry import MathModelRegistry
from rgs.errors import ConfigurationError, GameError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)

MAX_BET = Decimal("1000000")
DEFAULT_CURRENCY = "USD"


class Settlement:
    """Entry point for every round request.

    Holds no round state of its own; it sequences the registry, the instant ledger
    and the crash ledger and turns their errors into ``(False, data)`` results, the
    same shape every casino manager returns.
    """

    def __init__(
        self,
        registry: MathModelRegistry,
        instant: InstantLedger,
        crash: CrashLedger,
        max_bet: Decimal = MAX_BET,
        default_currency: str = DEFAULT_CURRENCY,
    ) -> None:
        self.registry = registry
        self.instant = instant
        self.crash = crash
        self.max_bet = Decimal(max_bet)
        self.default_currency = default_currency

    @classmethod
    def open(
        cls,
        root: Path,
        step_ms: int = STEP_MS,
        max_bet=MAX_BET,
        default_currency: str = DEFAULT_CURRENCY,
        clock: Callable[[], float] = time.time,
    ) -> "Settlement":
        log = SettlementLog(root)
        return cls(
            registry=MathModelRegistry(root),
            instant=InstantLedger(log, clock=clock),
            crash=CrashLedger(log, step_ms=step_ms, clock=clock),
            max_bet=to_decimal(max_bet, "max_bet"),
            default_currency=default_currency,
        )

    def _stake(self, raw) -> Decimal:
        stake = to_decimal(raw, "stake")
        if stake <= 0:
            raise ValidationError("stake must be positive", "invalid_amount")
        if stake > self.max_bet:
            raise ValidationError("stake exceeds maximum", "invalid_amount")
        return stake

    def _currency(self, raw) -> str:
        cur = str(raw or "").strip().upper()
        return cur or self.default_currency

    def _fail(self, op: str, exc: GameError) -> tuple[bool, dict]:
        level = logging.ERROR if exc.kind in {"persistence", "configuration"} else logging.INFO
        logger.log(level, "%s failed: %s (%s)", op, exc.code, exc.message)
        return False, exc.to_dict()

    def register_math_model(self, payload) -> tuple[bool, dict]:
        try:
            model = payload if isinstance(payload, MathModel) or payload is None else MathModel.from_dict(payload)
            if model is None or not model.model_id:
                return True, {"registered": False}
            if not model.usable():
                logger.warning("math model %s has no drawable tier; rounds will be refused", model.model_id)
            digest = content_hash(model)
            if model.integrity is not None and model.integrity.content_hash and model.integrity.content_hash != digest:
                logger.warning("math model %s content hash does not match its prize table", model.model_id)
            self.registry.register(model)
        except GameError as exc:
            return self._fail("register_math_model", exc)
        logger.info("math model %s registered (%d tiers)", model.model_id, len(model.prize_table))
        return True, {
            "registered": True,
            "model_id": model.model_id,
            "message": "game math registered",
            "content_hash": digest,
            "stats": compute_stats(model).to_dict(),
        }

    def get_math_model(self, model_id: str) -> tuple[bool, dict]:
        model = self.registry.get(model_id)
        if model is None:
            return self._fail("get_math_model", NotFoundError(f"math model {model_id} not found", "model_not_found"))
        return True, {"model": model.to_dict()}

    def settle_instant_round(self, round_id: str, stake, currency: str, model_id: str) -> tuple[bool, dict]:
        try:
            # a retry gets the recorded result whatever stake it carries
            replay = self.instant.replay(round_id)
            if replay is not None:
                return True, self._instant_view(replay, True)
            rid, bet = validate_round(round_id, self._stake(stake))
            model = self.registry.get(model_id)
            if model is None:
                raise ConfigurationError(f"no math model registered for {model_id}", "model_not_found")
            result, replayed = self.instant.settle(rid, bet, self._currency(currency), model)
        except GameError as exc:
            return self._fail("settle_instant_round", exc)
        return True, self._instant_view(result, replayed)

    def _instant_view(self, result: SettlementResult, replayed: bool) -> dict:
        out = result.to_dict()
        out["idempotent_replay"] = bool(replayed)
        return out

    def start_crash_round(self, round_id: str, stake, currency: str) -> tuple[bool, dict]:
        try:
            rnd = self.crash.start(round_id, self._stake(stake), self._currency(currency))
        except GameError as exc:
            return self._fail("start_crash_round", exc)
        return True, rnd.to_dict()

    def cashout_crash_round(self, round_id: str, claimed_step) -> tuple[bool, dict]:
        try:
            result = self.crash.cashout(round_id, _step(claimed_step))
        except GameError as exc:
            return self._fail("cashout_crash_round", exc)
        out = {
            "round_id": result.round_id,
            "outcome": result.outcome,
            "cashed_out": result.outcome == OUTCOME_WIN,
            "crashed": result.outcome == OUTCOME_LOSE,
            "step": result.step,
            "payout": float(result.payout),
            "balance_delta": float(result.balance_delta),
            "currency": result.currency,
        }
        if result.outcome == OUTCOME_WIN:
            out["multiplier"] = float(result.multiplier)
        else:
            out["crash_step"] = result.crash_step
            out["crash_multiplier"] = float(result.multiplier)
        return True, out

    def crash_round_status(self, round_id: str) -> tuple[bool, dict]:
        try:
            return True, self.crash.status(round_id)
        except GameError as exc:
            return self._fail("crash_round_status", exc)


def _step(raw) -> int:
    if isinstance(raw, bool):
        raise ValidationError("step must be an integer", "invalid_step")
    if isinstance(raw, int):
        return raw
    if isinstance(raw, float) and raw.is_integer():
        return int(raw)
    if isinstance(raw, str) and re.fullmatch(r"-?[0-9]+", raw.strip()):
        return int(raw.strip())
    raise ValidationError("step must be an integer", "invalid_step")
