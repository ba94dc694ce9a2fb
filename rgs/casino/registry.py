import copy
import json
import logging
import sqlite3
from pathlib import Path
from threading import Lock

from rgs.casino.outcome import MathModel
from rgs.database import connect, setup
from rgs.errors import PersistenceError, ValidationError


logger = logging.getLogger(__name__)


class MathModelRegistry:
    """Math models keyed by model id, persisted to ``gamemath.db``.

    A write reaches disk before the in-memory table changes, so a failed write
    leaves the previously registered model in place.
    """

    def __init__(self, root: Path) -> None:
        self._root = Path(root)
        self._lock = Lock()
        self._models: dict[str, MathModel] = {}
        setup(self._root)
        self._load()

    def _load(self) -> None:
        db = connect(self._root, "gamemath")
        try:
            rows = db.execute("SELECT model_id, payload FROM game_math").fetchall()
        finally:
            db.close()
        with self._lock:
            for model_id, payload in rows:
                try:
                    model = MathModel.from_dict(json.loads(payload))
                except (ValueError, ValidationError):
                    logger.warning("skipping unreadable math model %s", model_id)
                    continue
                if model.model_id:
                    self._models[model.model_id] = model
        logger.info("loaded %d math models", len(self._models))

    def register(self, model: MathModel | None) -> None:
        if model is None or not model.model_id:
            return
        payload = json.dumps(model.to_dict(), sort_keys=True)
        with self._lock:
            try:
                db = connect(self._root, "gamemath")
            except (sqlite3.Error, OSError) as exc:
                raise PersistenceError(f"could not open math model store: {exc}") from exc
            try:
                db.execute("BEGIN IMMEDIATE")
                db.execute(
                    """
                    INSERT INTO game_math (model_id, payload, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(model_id) DO UPDATE SET payload = excluded.payload, updated_at = CURRENT_TIMESTAMP
                    """,
                    (model.model_id, payload),
                )
                db.execute("COMMIT")
            except sqlite3.Error as exc:
                if db.in_transaction:
                    db.execute("ROLLBACK")
                raise PersistenceError(f"could not store math model {model.model_id}: {exc}") from exc
            finally:
                db.close()
            self._models[model.model_id] = copy.deepcopy(model)

    def get(self, model_id: str) -> MathModel | None:
        with self._lock:
            model = self._models.get(str(model_id or "").strip())
            return copy.deepcopy(model) if model is not None else None

    def list_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._models)
