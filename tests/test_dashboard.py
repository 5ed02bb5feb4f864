from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

from rangekeeper.dashboard import create_app


def _write_status(data_dir, age_seconds: float) -> None:
    ts = datetime.now(timezone.utc) - timedelta(seconds=age_seconds)
    (data_dir / "status.json").write_text(json.dumps({"ts": ts.isoformat(), "pool": {"tick": 1}}))


def test_health_is_503_until_first_status(tmp_path) -> None:
    client = create_app(tmp_path).test_client()
    assert client.get("/health").status_code == 503

    _write_status(tmp_path, 0)
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.get_json()["ok"] is True


def test_status_reports_age_and_staleness(tmp_path) -> None:
    client = create_app(tmp_path, poll_interval=5).test_client()

    body = client.get("/api/status").get_json()
    assert body["status"] == "initializing"

    _write_status(tmp_path, 1)
    body = client.get("/api/status").get_json()
    assert body["stale"] is False
    assert body["status"] == "ok"
    assert body["pool"]["tick"] == 1

    _write_status(tmp_path, 60)
    body = client.get("/api/status").get_json()
    assert body["stale"] is True
    assert body["age_seconds"] >= 60


def test_journals_are_tailed(tmp_path) -> None:
    lines = [json.dumps({"n": i}) for i in range(10)]
    (tmp_path / "decisions.jsonl").write_text("\n".join(lines) + "\nnot json\n")
    (tmp_path / "migrations.jsonl").write_text(json.dumps({"outcome": "succeeded"}) + "\n")
    client = create_app(tmp_path).test_client()

    decisions = client.get("/api/decisions?limit=3").get_json()
    assert [d["n"] for d in decisions] == [8, 9]

    decisions = client.get("/api/decisions").get_json()
    assert len(decisions) == 10

    assert client.get("/api/migrations").get_json() == [{"outcome": "succeeded"}]


def test_missing_journals_are_empty(tmp_path) -> None:
    client = create_app(tmp_path).test_client()
    assert client.get("/api/decisions").get_json() == []
    assert client.get("/api/migrations").get_json() == []
