from __future__ import annotations

import importlib
import logging

import pytest

from rangekeeper import agent, config
from rangekeeper.errors import InvalidParameter


def test_strategy_params_come_from_module_settings(monkeypatch) -> None:
    monkeypatch.setattr(config, "RANGE_WIDTH_FRACTION", 0.2)
    monkeypatch.setattr(config, "EDGE_BUFFER_FRACTION", 0.05)
    monkeypatch.setattr(config, "DWELL_SECONDS", 30.0)
    monkeypatch.setattr(config, "MIN_MIGRATION_INTERVAL_SECONDS", 600.0)

    p = config.strategy_params()
    assert p.range_width_fraction == 0.2
    assert p.edge_buffer_fraction == 0.05
    assert p.dwell_seconds == 30.0
    assert p.min_migration_interval_seconds == 600.0


def test_buffer_not_below_width_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(config, "RANGE_WIDTH_FRACTION", 0.05)
    monkeypatch.setattr(config, "EDGE_BUFFER_FRACTION", 0.05)
    with pytest.raises(InvalidParameter):
        config.validate()


@pytest.mark.parametrize(
    "name, value",
    [
        ("POLL_INTERVAL_SECONDS", 0),
        ("TICK_SPACING", 0),
        ("SEED_LIQUIDITY", 0),
        ("POSITION_TOKEN_ID", 0),
    ],
)
def test_operational_settings_are_validated(monkeypatch, name, value) -> None:
    monkeypatch.setattr(config, "RANGE_WIDTH_FRACTION", 0.10)
    monkeypatch.setattr(config, "EDGE_BUFFER_FRACTION", 0.02)
    monkeypatch.setattr(config, name, value)
    with pytest.raises(InvalidParameter):
        config.validate()


def test_live_mode_requires_a_key(monkeypatch) -> None:
    monkeypatch.setattr(config, "RANGE_WIDTH_FRACTION", 0.10)
    monkeypatch.setattr(config, "EDGE_BUFFER_FRACTION", 0.02)
    monkeypatch.setattr(config, "DRY_RUN", False)
    monkeypatch.setattr(config, "AGENT_PRIVATE_KEY", "")
    with pytest.raises(InvalidParameter, match="AGENT_PRIVATE_KEY"):
        config.validate()

    monkeypatch.setattr(config, "DRY_RUN", True)
    config.validate()


def test_env_parsers_defer_garbage_to_validate(monkeypatch) -> None:
    monkeypatch.setattr(config, "PARSE_ERRORS", [])
    monkeypatch.setenv("RK_TEST_NUMBER", "ten")
    assert config._env_float("RK_TEST_NUMBER", "1") == 1.0
    assert config._env_int("RK_TEST_NUMBER", "2") == 2
    assert len(config.PARSE_ERRORS) == 2

    with pytest.raises(InvalidParameter, match="RK_TEST_NUMBER must be a number"):
        config.validate()

    monkeypatch.setenv("RK_TEST_FLAG", "Yes")
    assert config._env_bool("RK_TEST_FLAG", "false") is True
    monkeypatch.delenv("RK_TEST_FLAG")
    assert config._env_bool("RK_TEST_FLAG", "false") is False


def test_describe_masks_private_key(monkeypatch) -> None:
    monkeypatch.setattr(config, "AGENT_PRIVATE_KEY", "0x" + "ab" * 32)
    described = config.describe()
    assert described["agent_private_key"] == "********"
    assert "ab" * 32 not in str(described)


def test_pool_key_orders_currencies(monkeypatch) -> None:
    usdc = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"
    monkeypatch.setattr(config, "TOKEN0_ADDRESS", usdc)
    monkeypatch.setattr(config, "TOKEN1_ADDRESS", config.NATIVE_ADDRESS)

    key = config.build_pool_key()
    assert int(key["currency0"], 16) == 0
    assert key["currency1"] == usdc


def test_pool_id_is_a_bytes32_hex(monkeypatch) -> None:
    monkeypatch.setattr(config, "TOKEN0_ADDRESS", config.NATIVE_ADDRESS)
    monkeypatch.setattr(config, "TOKEN1_ADDRESS", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
    pool_id = config.compute_pool_id()
    assert pool_id.startswith("0x")
    assert len(pool_id) == 66
    assert pool_id == config.compute_pool_id()


@pytest.fixture
def reload_config(monkeypatch, tmp_path):
    """Re-read settings from a patched environment, restoring the defaults afterwards."""
    monkeypatch.setenv("DATA_DIR", str(tmp_path))
    rk_logger = logging.getLogger("rangekeeper")
    handlers = list(rk_logger.handlers)
    yield lambda: importlib.reload(config)

    for handler in rk_logger.handlers[:]:
        if handler not in handlers:
            rk_logger.removeHandler(handler)
            handler.close()
    monkeypatch.undo()
    importlib.reload(config)


def test_malformed_env_value_does_not_break_import(reload_config, monkeypatch) -> None:
    monkeypatch.setenv("DWELL_SECONDS", "ten")
    monkeypatch.setenv("POSITION_TOKEN_ID", "1234")
    reload_config()

    assert config.DWELL_SECONDS == 10.0
    assert config.POSITION_TOKEN_ID == 1234
    assert config.PARSE_ERRORS == ["DWELL_SECONDS must be a number, got 'ten'"]


def test_cli_reports_configuration_error_and_exits_1(reload_config, monkeypatch, caplog, capsys) -> None:
    monkeypatch.setenv("DWELL_SECONDS", "ten")
    reload_config()

    with caplog.at_level(logging.ERROR, logger="rangekeeper"):
        assert agent.main(["status"]) == 1

    assert "Configuration error: DWELL_SECONDS must be a number, got 'ten'" in caplog.text
    assert "check your .env file" in capsys.readouterr().err
