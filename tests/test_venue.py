from __future__ import annotations

from types import SimpleNamespace

import pytest

from conftest import make_position
from rangekeeper import venue as venue_module
from rangekeeper.errors import NoPositionFound
from rangekeeper.lp_manager import PositionStore
from rangekeeper.venue import UniswapV4Venue

OWNER = "0x" + "ab" * 20


class StubReader:
    """Chain reads for a wallet that owns position 42 in the configured pool."""

    def __init__(self, w3, config, owner):
        self.owner = owner
        self.positions = {42: make_position(-600, 400, position_id=42)}
        self.reads = []

    def get_position_snapshot(self, token_id):
        self.reads.append(token_id)
        return self.positions.get(token_id)


class StubLPManager:
    native_currency0 = True

    def __init__(self, w3, account, config):
        pass


@pytest.fixture
def make_venue(monkeypatch, tmp_path):
    monkeypatch.setattr(venue_module, "StateReader", StubReader)
    monkeypatch.setattr(venue_module, "LPManager", StubLPManager)

    def _make(position_token_id=None):
        cfg = SimpleNamespace(POSITION_TOKEN_ID=position_token_id, TX_DEADLINE_SECONDS=600)
        account = SimpleNamespace(address=OWNER)
        return UniswapV4Venue(None, account, cfg, PositionStore(tmp_path / "positions.json"))

    return _make


def test_track_position_persists_owned_position(make_venue) -> None:
    v = make_venue()
    position = v.track_position(42)

    assert position.position_id == 42
    record = v.store.load()
    assert record["token_id"] == 42
    assert (record["tick_lower"], record["tick_upper"]) == (-600, 400)


def test_track_position_rejects_unknown_token(make_venue) -> None:
    v = make_venue()
    with pytest.raises(NoPositionFound, match=OWNER):
        v.track_position(99)
    assert v.store.load() is None


def test_fresh_deployment_without_token_id_points_at_track(make_venue) -> None:
    v = make_venue()
    with pytest.raises(NoPositionFound, match="rangekeeper track"):
        v.find_position()


def test_fresh_deployment_adopts_configured_token_id(make_venue) -> None:
    v = make_venue(position_token_id=42)

    position = v.find_position()
    assert position.position_id == 42
    assert v.store.load()["token_id"] == 42


def test_tracked_position_wins_over_configured_token_id(make_venue) -> None:
    v = make_venue(position_token_id=99)
    v.reader.positions[7] = make_position(-100, 100, position_id=7)
    v.store.save(7, -100, 100)

    assert v.find_position().position_id == 7
    assert v.reader.reads == [7]


def test_burned_tracked_position_is_reported(make_venue) -> None:
    v = make_venue(position_token_id=42)
    v.store.save(8, -100, 100)
    with pytest.raises(NoPositionFound, match="no longer exists"):
        v.find_position()
