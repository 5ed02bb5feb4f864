"""
rangekeeper dashboard — read-only Flask API over the agent's data directory.

The agent writes status.json on every poll and appends to decisions.jsonl and
migrations.jsonl; this app only reads those files, so it can run in a
separate process (or container) from the poll loop.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path

from flask import Flask, jsonify, request

logger = logging.getLogger("rangekeeper.dashboard")

# status.json older than this many poll intervals is reported as stale
STALE_POLL_INTERVALS = 3
DEFAULT_LIMIT = 50
MAX_LIMIT = 1000


def _tail_jsonl(path: Path, limit: int) -> list[dict]:
    if not path.exists():
        return []
    records = []
    for line in path.read_text().splitlines()[-limit:]:
        try:
            records.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return records


def _read_status(path: Path) -> dict | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except json.JSONDecodeError:
        # Partially written file from a non-atomic writer; treat as missing.
        logger.warning("Could not parse %s", path)
        return None


def create_app(data_dir, poll_interval: float = 5.0) -> Flask:
    data_dir = Path(data_dir)
    status_file = data_dir / "status.json"
    decisions_jsonl = data_dir / "decisions.jsonl"
    migrations_jsonl = data_dir / "migrations.jsonl"
    stale_after = STALE_POLL_INTERVALS * poll_interval

    app = Flask(__name__)

    def _limit() -> int:
        limit = request.args.get("limit", DEFAULT_LIMIT, type=int)
        return max(1, min(limit, MAX_LIMIT))

    # -----------------------------------------------------------------------
    # Routes
    # -----------------------------------------------------------------------
    @app.route("/api/status")
    def api_status():
        status = _read_status(status_file)
        if status is None:
            return jsonify({"status": "initializing", "age_seconds": None, "stale": True})

        age = (datetime.now(timezone.utc) - datetime.fromisoformat(status["ts"])).total_seconds()
        status["age_seconds"] = round(age, 1)
        status["stale"] = age > stale_after
        status["status"] = "stale" if status["stale"] else "ok"
        return jsonify(status)

    @app.route("/api/decisions")
    def api_decisions():
        return jsonify(_tail_jsonl(decisions_jsonl, _limit()))

    @app.route("/api/migrations")
    def api_migrations():
        return jsonify(_tail_jsonl(migrations_jsonl, _limit()))

    @app.route("/health")
    def health():
        status = _read_status(status_file)
        if status is not None:
            return jsonify({"ok": True, "updated_at": status.get("ts")}), 200
        return jsonify({"ok": False, "status": "initializing"}), 503

    return app
