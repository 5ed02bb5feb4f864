from __future__ import annotations

import json

import pytest
from eth_abi import decode as abi_decode
from eth_account import Account
from web3 import Web3

from rangekeeper import config
from rangekeeper.lp_manager import LPManager, PositionStore
from rangekeeper.state_reader import decode_position_info, owed_fees, pool_key_matches

TEST_KEY = "0x" + "11" * 32


@pytest.fixture
def lp(monkeypatch):
    monkeypatch.setattr(config, "TOKEN0_ADDRESS", config.NATIVE_ADDRESS)
    monkeypatch.setattr(config, "TOKEN1_ADDRESS", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913")
    w3 = Web3(Web3.HTTPProvider("http://127.0.0.1:8545"))
    manager = LPManager(w3, Account.from_key(TEST_KEY), config)

    sent = []

    def fake_send(actions, params, deadline, value=0):
        sent.append({"actions": actions, "params": params, "deadline": deadline, "value": value})
        return {"transactionHash": b"\x01" * 32, "status": 1, "logs": []}

    monkeypatch.setattr(manager, "_send_modify_liquidities", fake_send)
    manager.sent = sent
    return manager


# ----------------------------------------------------------------------
# Action encoding
# ----------------------------------------------------------------------


def test_collect_fees_is_zero_decrease_then_take(lp) -> None:
    lp.collect_fees(42, deadline=123)
    call = lp.sent[-1]
    assert call["actions"] == bytes([config.DECREASE_LIQUIDITY, config.TAKE_PAIR])
    token_id, liquidity, *_ = abi_decode(
        ["uint256", "uint256", "uint128", "uint128", "bytes"], call["params"][0]
    )
    assert (token_id, liquidity) == (42, 0)
    assert call["deadline"] == 123


def test_close_decreases_burns_and_takes(lp) -> None:
    lp.remove_liquidity_and_close(42, 5_000, deadline=123)
    call = lp.sent[-1]
    assert call["actions"] == bytes(
        [config.DECREASE_LIQUIDITY, config.BURN_POSITION, config.TAKE_PAIR]
    )
    _, liquidity, *_ = abi_decode(
        ["uint256", "uint256", "uint128", "uint128", "bytes"], call["params"][0]
    )
    assert liquidity == 5_000


def test_close_of_empty_position_only_burns(lp) -> None:
    lp.remove_liquidity_and_close(42, 0, deadline=123)
    assert lp.sent[-1]["actions"] == bytes([config.BURN_POSITION, config.TAKE_PAIR])


def test_mint_with_native_currency_sweeps_and_sends_value(lp) -> None:
    result = lp.mint_position(-100, 100, 1_000, 10**16, 5 * 10**6, deadline=123)
    call = lp.sent[-1]
    assert call["actions"] == bytes(
        [config.MINT_POSITION, config.CLOSE_CURRENCY, config.CLOSE_CURRENCY, config.SWEEP]
    )
    assert call["value"] == 10**16
    assert result["token_id"] is None
    assert result["tx_hash"] == "0x" + "01" * 32


def test_increase_liquidity_encodes_maxima(lp) -> None:
    lp.increase_liquidity(42, 777, 10, 20, deadline=123)
    call = lp.sent[-1]
    assert call["actions"][0] == config.INCREASE_LIQUIDITY
    decoded = abi_decode(["uint256", "uint256", "uint128", "uint128", "bytes"], call["params"][0])
    assert decoded[:4] == (42, 777, 10, 20)


def test_token_id_is_parsed_from_mint_transfer(lp) -> None:
    transfer = lp.w3.keccak(text="Transfer(address,address,uint256)")
    to_topic = b"\x00" * 12 + bytes.fromhex(lp.account.address[2:])
    receipt = {
        "logs": [
            {"address": "0x" + "22" * 20, "topics": [transfer, b"\x00" * 32, to_topic, (1).to_bytes(32, "big")]},
            {
                "address": config.POSITION_MANAGER,
                "topics": [transfer, b"\x00" * 32, to_topic, (98_765).to_bytes(32, "big")],
            },
        ]
    }
    assert lp._parse_token_id_from_receipt(receipt) == 98_765
    assert lp._parse_token_id_from_receipt({"logs": []}) is None


# ----------------------------------------------------------------------
# PositionInfo decoding and fee math
# ----------------------------------------------------------------------


def test_position_info_unpacks_signed_ticks() -> None:
    lower, upper = -887_220, 195_000
    info = ((upper & 0xFFFFFF) << 32) | ((lower & 0xFFFFFF) << 8) | 0x01
    info |= 0xABCDEF << 56
    assert decode_position_info(info) == (lower, upper)


def test_owed_fees_handles_counter_wraparound() -> None:
    q128 = 2**128
    assert owed_fees(3 * q128, q128, 10) == 20
    # inside wrapped past 2^256 since the last checkpoint
    assert owed_fees(q128, 2**256 - q128, 10) == 20
    assert owed_fees(q128, q128, 10) == 0


# ----------------------------------------------------------------------
# Position store
# ----------------------------------------------------------------------


def test_store_round_trip_and_clear(tmp_path) -> None:
    store = PositionStore(tmp_path / "positions.json")
    assert store.load() is None

    store.save(42, -100, 100)
    record = store.load()
    assert record["token_id"] == 42
    assert (record["tick_lower"], record["tick_upper"]) == (-100, 100)
    assert "entry_price" not in record

    store.clear()
    assert store.load() is None
    store.clear()


def test_store_treats_non_object_record_as_empty(tmp_path) -> None:
    path = tmp_path / "positions.json"
    path.write_text(json.dumps([{"token_id": 1}, {"token_id": 2}]))
    assert PositionStore(path).load() is None

    path.write_text("42")
    assert PositionStore(path).load() is None


def test_store_treats_corrupt_file_as_empty(tmp_path) -> None:
    path = tmp_path / "positions.json"
    path.write_text("{not json")
    assert PositionStore(path).load() is None


# ----------------------------------------------------------------------
# Pool key matching
# ----------------------------------------------------------------------


USDC = "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"


def test_pool_key_match_ignores_address_case() -> None:
    expected = (config.NATIVE_ADDRESS, USDC, 500, 10, config.NATIVE_ADDRESS)
    actual = (config.NATIVE_ADDRESS, USDC.lower(), 500, 10, config.NATIVE_ADDRESS)
    assert pool_key_matches(actual, expected)


@pytest.mark.parametrize(
    "actual",
    [
        (config.NATIVE_ADDRESS, USDC, 3000, 10, config.NATIVE_ADDRESS),
        (config.NATIVE_ADDRESS, USDC, 500, 60, config.NATIVE_ADDRESS),
        (config.NATIVE_ADDRESS, "0x" + "22" * 20, 500, 10, config.NATIVE_ADDRESS),
        (config.NATIVE_ADDRESS, USDC, 500, 10),
    ],
)
def test_pool_key_mismatch_is_detected(actual) -> None:
    expected = (config.NATIVE_ADDRESS, USDC, 500, 10, config.NATIVE_ADDRESS)
    assert not pool_key_matches(actual, expected)
