import logging
from pathlib import Path
from uuid import uuid4

from flask import Flask, request

from rgs.casino.settlement import Settlement
from rgs.config import load
from rgs.errors import STATUS_BY_KIND
from rgs.logs import setup_logging


logger = logging.getLogger(__name__)

CRASH_GAME = "crash"


def _jsonpayload() -> dict:
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _first(payload: dict, *keys):
    for key in keys:
        val = payload.get(key)
        if val is not None and val != "":
            return val
    return None


def _reply(ok: bool, data: dict):
    code = 200 if ok else STATUS_BY_KIND.get(data.get("kind", ""), 500)
    return {"ok": ok, **data}, code


def create_app(settings: dict | None = None, settlement: Settlement | None = None) -> Flask:
    cfg = settings or load()
    setup_logging(cfg.get("log_level", "INFO"))
    if settlement is None:
        settlement = Settlement.open(
            Path(cfg.get("data_dir", "data")),
            step_ms=int(cfg.get("crash_step_ms", 100)),
            max_bet=cfg.get("max_bet", "1000000"),
            default_currency=cfg.get("default_currency", "USD"),
        )

    app = Flask(__name__)
    app.extensions["rgs_settlement"] = settlement

    @app.route("/health")
    def health():
        return {"ok": True, "models": len(settlement.registry.list_ids())}

    @app.route("/rgs/providers/<provider>/games/<game>/math", methods=["POST"])
    def registermath(provider: str, game: str):
        payload = request.get_json(silent=True)
        if not isinstance(payload, dict):
            return {"ok": False, "error": "invalid_body", "kind": "validation", "message": "invalid body"}, 400
        if not str(payload.get("model_id", "") or "").strip():
            return {"ok": False, "error": "invalid_body", "kind": "validation", "message": "model_id required"}, 400
        if not payload.get("prize_table"):
            return {"ok": False, "error": "invalid_body", "kind": "validation", "message": "prize_table required"}, 400
        ok, data = settlement.register_math_model(payload)
        if ok:
            logger.info("provider %s registered math for %s", provider, game)
        return _reply(ok, data)

    @app.route("/rgs/providers/<provider>/games/<game>/math", methods=["GET"])
    def getmath(provider: str, game: str):
        model_id = str(request.args.get("model_id", "") or game).strip()
        return _reply(*settlement.get_math_model(model_id))

    @app.route("/rgs/providers/<provider>/games/<game>/round/start", methods=["POST"])
    def roundstart(provider: str, game: str):
        payload = _jsonpayload()
        round_id = str(_first(payload, "round_id", "roundId") or "").strip() or str(uuid4())
        amount = _first(payload, "bet_amount", "amount")
        currency = _first(payload, "currency")
        if game == CRASH_GAME:
            return _reply(*settlement.start_crash_round(round_id, amount, currency))
        model_id = str(_first(payload, "game_code") or game).strip()
        return _reply(*settlement.settle_instant_round(round_id, amount, currency, model_id))

    @app.route("/rgs/providers/<provider>/games/<game>/round/cashout", methods=["POST"])
    def roundcashout(provider: str, game: str):
        if game != CRASH_GAME:
            return {"ok": False, "error": "unsupported_game", "kind": "not_found", "message": "no cashout for this game"}, 404
        payload = _jsonpayload()
        round_id = _first(payload, "round_id", "roundId")
        return _reply(*settlement.cashout_crash_round(round_id, _first(payload, "step")))

    @app.route("/rgs/providers/<provider>/games/<game>/round/status")
    def roundstatus(provider: str, game: str):
        if game != CRASH_GAME:
            return {"ok": False, "error": "unsupported_game", "kind": "not_found", "message": "no status for this game"}, 404
        round_id = request.args.get("roundId") or request.args.get("round_id") or ""
        return _reply(*settlement.crash_round_status(round_id))

    return app


if __name__ == "__main__":
    config = load()
    create_app(config).run(host=config["host"], port=config["port"], debug=config["debug"])
