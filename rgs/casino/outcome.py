import hashlib
import json
import random
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from rgs.errors import ValidationError


RNG = random.SystemRandom()
MONEY = Decimal("0.01")

SYMBOLS = ["cherry", "lemon", "star", "seven"]
LOSE_TIER = "LOSE"


def to_decimal(value, name: str = "value") -> Decimal:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number", "invalid_number")
    try:
        out = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise ValidationError(f"{name} must be a number", "invalid_number") from None
    if not out.is_finite():
        raise ValidationError(f"{name} must be finite", "invalid_number")
    return out


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(MONEY, rounding=ROUND_HALF_UP)


def fmt_decimal(val: Decimal) -> str:
    norm = Decimal(val).normalize()
    text = format(norm, "f")
    return text.rstrip("0").rstrip(".") if "." in text else text


@dataclass
class PrizeTier:
    tier: str
    multiplier: Decimal
    weight: int

    def to_dict(self) -> dict:
        return {"tier": self.tier, "multiplier": float(self.multiplier), "weight": int(self.weight)}

    @classmethod
    def from_dict(cls, raw: dict) -> "PrizeTier":
        if not isinstance(raw, dict):
            raise ValidationError("prize tier must be an object", "invalid_prize_table")
        label = str(raw.get("tier", "") or "").strip()
        if not label:
            raise ValidationError("prize tier label required", "invalid_prize_table")
        mult = to_decimal(raw.get("multiplier", 0), "multiplier")
        if mult < 0:
            raise ValidationError("multiplier must not be negative", "invalid_prize_table")
        weight = raw.get("weight", 0)
        if isinstance(weight, bool) or not isinstance(weight, (int, float, str)):
            raise ValidationError("weight must be an integer", "invalid_prize_table")
        if isinstance(weight, float) and not weight.is_integer():
            raise ValidationError("weight must be an integer", "invalid_prize_table")
        try:
            weight_int = int(weight)
        except ValueError:
            raise ValidationError("weight must be an integer", "invalid_prize_table") from None
        return cls(tier=label, multiplier=mult, weight=weight_int)


@dataclass
class Mechanic:
    type: str = ""
    match_count: int = 0

    def to_dict(self) -> dict:
        out = {"type": self.type}
        if self.match_count:
            out["match_count"] = int(self.match_count)
        return out


@dataclass
class GameStats:
    computed_rtp: float = 0.0
    hit_rate: float = 0.0
    variance: float = 0.0

    def to_dict(self) -> dict:
        return {"computed_rtp": self.computed_rtp, "hit_rate": self.hit_rate, "variance": self.variance}


@dataclass
class Integrity:
    content_hash: str = ""

    def to_dict(self) -> dict:
        return {"content_hash": self.content_hash}


@dataclass
class MathModel:
    model_id: str
    prize_table: list[PrizeTier] = field(default_factory=list)
    schema_version: int = 1
    model_version: str = ""
    mechanic: Mechanic = field(default_factory=Mechanic)
    math_mode: str = ""
    win_logic: str = ""
    stats: GameStats | None = None
    integrity: Integrity | None = None

    def total_weight(self) -> int:
        return sum(t.weight for t in self.prize_table if t.weight > 0)

    def usable(self) -> bool:
        return self.total_weight() > 0

    def to_dict(self) -> dict:
        out = {
            "schema_version": int(self.schema_version),
            "model_id": self.model_id,
            "model_version": self.model_version,
            "mechanic": self.mechanic.to_dict(),
            "math_mode": self.math_mode,
            "win_logic": self.win_logic,
            "prize_table": [t.to_dict() for t in self.prize_table],
        }
        if self.stats is not None:
            out["stats"] = self.stats.to_dict()
        if self.integrity is not None:
            out["integrity"] = self.integrity.to_dict()
        return out

    @classmethod
    def from_dict(cls, raw: dict) -> "MathModel":
        if not isinstance(raw, dict):
            raise ValidationError("math model must be an object", "invalid_body")
        table = raw.get("prize_table") or []
        if not isinstance(table, list):
            raise ValidationError("prize_table must be a list", "invalid_prize_table")
        mech = raw.get("mechanic") or {}
        if isinstance(mech, str):
            mech = {"type": mech}
        stats = raw.get("stats")
        integrity = raw.get("integrity")
        try:
            return cls(
                model_id=str(raw.get("model_id", "") or "").strip(),
                prize_table=[PrizeTier.from_dict(t) for t in table],
                schema_version=int(raw.get("schema_version", 1) or 1),
                model_version=str(raw.get("model_version", "") or ""),
                mechanic=Mechanic(
                    type=str(mech.get("type", "") or ""),
                    match_count=int(mech.get("match_count", 0) or 0),
                ),
                math_mode=str(raw.get("math_mode", "") or ""),
                win_logic=str(raw.get("win_logic", "") or ""),
                stats=GameStats(
                    computed_rtp=float(stats.get("computed_rtp", 0) or 0),
                    hit_rate=float(stats.get("hit_rate", 0) or 0),
                    variance=float(stats.get("variance", 0) or 0),
                ) if isinstance(stats, dict) else None,
                integrity=Integrity(
                    content_hash=str(integrity.get("content_hash", "") or ""),
                ) if isinstance(integrity, dict) else None,
            )
        except (TypeError, ValueError, AttributeError):
            raise ValidationError("malformed math model", "invalid_body") from None


def is_losing(tier: PrizeTier) -> bool:
    return tier.tier == LOSE_TIER or tier.multiplier == 0


def pick_tier(model: MathModel | None) -> tuple[PrizeTier | None, bool]:
    """Draw one tier by weight from the OS entropy source.

    Tiers with weight <= 0 can never be drawn. ``(None, False)`` means the model is
    unusable, which is a configuration problem and not a losing draw.
    """
    if model is None or not model.prize_table:
        return None, False
    total = model.total_weight()
    if total <= 0:
        return None, False
    target = RNG.randrange(total)
    upto = 0
    for tier in model.prize_table:
        if tier.weight <= 0:
            continue
        upto += tier.weight
        if target < upto:
            return tier, True
    # unreachable: target < total == final upto
    return None, False


def render_symbols(tier: PrizeTier) -> list[str]:
    if not is_losing(tier):
        sym = RNG.choice(SYMBOLS)
        return [sym, sym, sym]
    picks = [RNG.choice(SYMBOLS) for _ in range(3)]
    while picks[0] == picks[1] == picks[2]:
        picks[2] = RNG.choice(SYMBOLS)
    return picks


def compute_stats(model: MathModel) -> GameStats:
    total = model.total_weight()
    if total <= 0:
        return GameStats()
    live = [t for t in model.prize_table if t.weight > 0]
    mean = sum(float(t.multiplier) * t.weight for t in live) / total
    hits = sum(t.weight for t in live if not is_losing(t)) / total
    var = sum(t.weight * (float(t.multiplier) - mean) ** 2 for t in live) / total
    return GameStats(computed_rtp=round(mean, 6), hit_rate=round(hits, 6), variance=round(var, 6))


def content_hash(model: MathModel) -> str:
    table = [
        {"tier": t.tier, "multiplier": fmt_decimal(t.multiplier), "weight": int(t.weight)}
        for t in model.prize_table
    ]
    blob = json.dumps(table, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()
