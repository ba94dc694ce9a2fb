import os
from dotenv import load_dotenv


def _port() -> int:
    for key in ("PORT", "RGS_PORT"):
        raw = os.getenv(key, "").strip()
        if raw.isdigit() and int(raw) > 0:
            return int(raw)
    return 8081


def load():
    load_dotenv()
    return {
        "host": os.getenv("HOST", "127.0.0.1"),
        "port": _port(),
        "debug": os.getenv("DEBUG", "false").lower() == "true",
        "data_dir": os.getenv("RGS_DATA_DIR", "data"),
        "crash_step_ms": int(os.getenv("CRASH_STEP_MS", "100")),
        "max_bet": os.getenv("MAX_BET", "1000000"),
        "default_currency": os.getenv("DEFAULT_CURRENCY", "USD"),
        "log_level": os.getenv("LOG_LEVEL", "INFO").upper(),
    }
