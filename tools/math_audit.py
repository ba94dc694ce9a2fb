from __future__ import annotations

import argparse
import json
from collections import Counter
from pathlib import Path

from rgs.casino.ledger import SettlementLog
from rgs.casino.outcome import MathModel, compute_stats, content_hash, pick_tier
from rgs.casino.settlement import Settlement


def load_model(fp: Path) -> MathModel:
    return MathModel.from_dict(json.loads(fp.read_text(encoding="utf-8-sig")))


def simulate(model: MathModel, draws: int) -> dict[str, float]:
    counts: Counter[str] = Counter()
    for _ in range(draws):
        tier, ok = pick_tier(model)
        if not ok:
            return {}
        counts[tier.tier] += 1
    return {label: counts[label] / draws for label in sorted(counts)}


def audit(model: MathModel, draws: int = 0) -> dict:
    stats = compute_stats(model)
    declared = model.stats.to_dict() if model.stats is not None else None
    declared_hash = model.integrity.content_hash if model.integrity is not None else ""
    digest = content_hash(model)
    total = model.total_weight()
    report = {
        "model_id": model.model_id,
        "usable": model.usable(),
        "tiers": len(model.prize_table),
        "total_weight": total,
        "weights": {t.tier: (t.weight / total if total > 0 and t.weight > 0 else 0.0) for t in model.prize_table},
        "computed": stats.to_dict(),
        "declared": declared,
        "content_hash": digest,
        "hash_matches": (declared_hash == digest) if declared_hash else None,
    }
    if draws > 0:
        report["observed"] = simulate(model, draws)
    return report


def main() -> None:
    parser = argparse.ArgumentParser(description="Audit game math files and optionally register them.")
    parser.add_argument("models", nargs="*", help="Math model JSON files")
    parser.add_argument("--simulate", type=int, default=0, help="Draw N outcomes per model and report observed shares")
    parser.add_argument("--register", action="store_true", help="Register every model into the data directory")
    parser.add_argument("--data-dir", default="data", help="RGS data directory")
    parser.add_argument("--rounds", type=int, default=0, help="Print the N most recent settled rounds")
    args = parser.parse_args()

    settlement = Settlement.open(Path(args.data_dir)) if args.register else None
    for name in args.models:
        model = load_model(Path(name))
        report = audit(model, args.simulate)
        print(json.dumps(report, indent=2))
        if settlement is not None:
            ok, data = settlement.register_math_model(model)
            print(f"register[{model.model_id}]: {'ok' if ok else data.get('error')}")

    if args.rounds > 0:
        for res in SettlementLog(Path(args.data_dir)).recent(args.rounds):
            print(json.dumps(res.to_dict()))


if __name__ == "__main__":
    main()
