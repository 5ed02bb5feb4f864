"""
Uniswap V4 PositionManager LP operations: collect fees, close, mint, deposit.
Uses raw eth_abi encoding for action commands sent via modifyLiquidities().
"""

import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path

from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address
from web3 import Web3

logger = logging.getLogger(__name__)

ABI_DIR = os.path.join(os.path.dirname(__file__), "abi")


def _load_abi(filename: str) -> list:
    with open(os.path.join(ABI_DIR, filename)) as f:
        return json.load(f)


# Max uint values used in approvals
MAX_UINT256 = 2**256 - 1
MAX_UINT160 = 2**160 - 1
MAX_UINT48 = 2**48 - 1

POOL_KEY_TYPE = "(address,address,uint24,int24,address)"
MODIFY_LIQUIDITY_TYPES = ["uint256", "uint256", "uint128", "uint128", "bytes"]
MINT_TYPES = [POOL_KEY_TYPE, "int24", "int24", "uint256", "uint128", "uint128", "address", "bytes"]


class LPManager:
    """Encodes and sends Uniswap V4 PositionManager commands."""

    def __init__(self, w3: Web3, account, config):
        self.w3 = w3
        self.account = account
        self.config = config

        pool_key = config.build_pool_key()
        self.pool_key = (
            pool_key["currency0"],
            pool_key["currency1"],
            pool_key["fee"],
            pool_key["tick_spacing"],
            pool_key["hooks"],
        )
        self.currency0 = pool_key["currency0"]
        self.currency1 = pool_key["currency1"]

        self.position_manager = w3.eth.contract(
            address=to_checksum_address(config.POSITION_MANAGER),
            abi=_load_abi("position_manager.json"),
        )
        self.permit2 = w3.eth.contract(
            address=to_checksum_address(config.PERMIT2),
            abi=_load_abi("permit2.json"),
        )
        self._erc20_abi = _load_abi("erc20.json")

    @property
    def native_currency0(self) -> bool:
        return int(self.currency0, 16) == 0

    # ------------------------------------------------------------------
    # Approvals (one-time setup)
    # ------------------------------------------------------------------

    def setup_approvals(self):
        """Approve token -> Permit2 -> PositionManager for every ERC20 in the pair.

        Native ETH needs no approval (sent as msg.value).
        """
        sender = self.account.address
        for currency in (self.currency0, self.currency1):
            if int(currency, 16) == 0:
                continue
            token = self.w3.eth.contract(address=currency, abi=self._erc20_abi)

            # Step 1: token.approve(Permit2, MAX_UINT256)
            tx = token.functions.approve(
                to_checksum_address(self.config.PERMIT2), MAX_UINT256
            ).build_transaction(
                {
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender),
                    "gas": 100_000,
                    "gasPrice": self.w3.eth.gas_price,
                }
            )
            receipt = self._sign_and_wait(tx)
            logger.info(
                "%s.approve(Permit2) tx=%s status=%s",
                currency,
                Web3.to_hex(receipt["transactionHash"]),
                receipt["status"],
            )

            # Step 2: Permit2.approve(token, PositionManager, MAX_UINT160, MAX_UINT48)
            tx2 = self.permit2.functions.approve(
                currency,
                to_checksum_address(self.config.POSITION_MANAGER),
                MAX_UINT160,
                MAX_UINT48,
            ).build_transaction(
                {
                    "from": sender,
                    "nonce": self.w3.eth.get_transaction_count(sender),
                    "gas": 100_000,
                    "gasPrice": self.w3.eth.gas_price,
                }
            )
            receipt2 = self._sign_and_wait(tx2)
            logger.info(
                "Permit2.approve(%s, PosMgr) tx=%s status=%s",
                currency,
                Web3.to_hex(receipt2["transactionHash"]),
                receipt2["status"],
            )

    # ------------------------------------------------------------------
    # Shared action params
    # ------------------------------------------------------------------

    def _take_pair(self) -> bytes:
        # TAKE_PAIR params: (address currency0, address currency1, address recipient)
        return abi_encode(
            ["address", "address", "address"],
            [self.currency0, self.currency1, self.account.address],
        )

    def _settle_actions(self) -> tuple[list[int], list[bytes]]:
        """CLOSE_CURRENCY for each token, plus SWEEP of excess native ETH."""
        cfg = self.config
        actions = [cfg.CLOSE_CURRENCY, cfg.CLOSE_CURRENCY]
        params = [
            abi_encode(["address"], [self.currency0]),
            abi_encode(["address"], [self.currency1]),
        ]
        if self.native_currency0:
            actions.append(cfg.SWEEP)
            params.append(
                abi_encode(["address", "address"], [self.currency0, self.account.address])
            )
        return actions, params

    # ------------------------------------------------------------------
    # Collect fees
    # ------------------------------------------------------------------

    def collect_fees(self, token_id: int, deadline: int) -> dict:
        """Collect accrued fees without removing liquidity.

        Actions: [DECREASE_LIQUIDITY (liquidity=0), TAKE_PAIR]
        """
        cfg = self.config
        decrease_params = abi_encode(MODIFY_LIQUIDITY_TYPES, [token_id, 0, 0, 0, b""])

        actions = bytes([cfg.DECREASE_LIQUIDITY, cfg.TAKE_PAIR])
        params = [decrease_params, self._take_pair()]

        receipt = self._send_modify_liquidities(actions, params, deadline)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info("Collected fees for token_id=%d tx=%s", token_id, tx_hash)
        return {"tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Remove liquidity + burn
    # ------------------------------------------------------------------

    def remove_liquidity_and_close(self, token_id: int, liquidity: int, deadline: int) -> dict:
        """Withdraw all liquidity to the wallet and burn the position NFT.

        Actions: [DECREASE_LIQUIDITY (all), BURN_POSITION, TAKE_PAIR]
        """
        cfg = self.config
        actions = []
        params = []
        if liquidity > 0:
            actions.append(cfg.DECREASE_LIQUIDITY)
            params.append(abi_encode(MODIFY_LIQUIDITY_TYPES, [token_id, liquidity, 0, 0, b""]))

        # BURN_POSITION params: (uint256 tokenId, uint128 amount0Min, uint128 amount1Min, bytes hookData)
        actions.append(cfg.BURN_POSITION)
        params.append(abi_encode(["uint256", "uint128", "uint128", "bytes"], [token_id, 0, 0, b""]))

        actions.append(cfg.TAKE_PAIR)
        params.append(self._take_pair())

        receipt = self._send_modify_liquidities(bytes(actions), params, deadline)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info(
            "Closed token_id=%d (removed liq=%d) tx=%s", token_id, liquidity, tx_hash
        )
        return {"tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Mint position
    # ------------------------------------------------------------------

    def mint_position(
        self,
        tick_lower: int,
        tick_upper: int,
        liquidity: int,
        amount0_max: int,
        amount1_max: int,
        deadline: int,
    ) -> dict:
        """Mint a new LP position.

        Actions: [MINT_POSITION, CLOSE_CURRENCY, CLOSE_CURRENCY, (SWEEP)]

        Returns {"tx_hash": str, "token_id": int | None}.
        """
        # MINT_POSITION params:
        # (PoolKey, int24 tickLower, int24 tickUpper, uint256 liquidity,
        #  uint128 amount0Max, uint128 amount1Max, address owner, bytes hookData)
        mint_params = abi_encode(
            MINT_TYPES,
            [
                self.pool_key,
                tick_lower,
                tick_upper,
                liquidity,
                amount0_max,
                amount1_max,
                self.account.address,
                b"",
            ],
        )
        settle_actions, settle_params = self._settle_actions()
        actions = bytes([self.config.MINT_POSITION, *settle_actions])
        params = [mint_params, *settle_params]

        value = amount0_max if self.native_currency0 else 0
        receipt = self._send_modify_liquidities(actions, params, deadline, value=value)

        token_id = self._parse_token_id_from_receipt(receipt)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info(
            "Minted position token_id=%s ticks=[%d, %d] liq=%d tx=%s",
            token_id,
            tick_lower,
            tick_upper,
            liquidity,
            tx_hash,
        )
        return {"tx_hash": tx_hash, "token_id": token_id}

    # ------------------------------------------------------------------
    # Increase liquidity (deposit wallet balances)
    # ------------------------------------------------------------------

    def increase_liquidity(
        self,
        token_id: int,
        liquidity: int,
        amount0_max: int,
        amount1_max: int,
        deadline: int,
    ) -> dict:
        """Add liquidity to an existing position from wallet balances.

        Actions: [INCREASE_LIQUIDITY, CLOSE_CURRENCY, CLOSE_CURRENCY, (SWEEP)]
        """
        increase_params = abi_encode(
            MODIFY_LIQUIDITY_TYPES,
            [token_id, liquidity, amount0_max, amount1_max, b""],
        )
        settle_actions, settle_params = self._settle_actions()
        actions = bytes([self.config.INCREASE_LIQUIDITY, *settle_actions])
        params = [increase_params, *settle_params]

        value = amount0_max if self.native_currency0 else 0
        receipt = self._send_modify_liquidities(actions, params, deadline, value=value)
        tx_hash = Web3.to_hex(receipt["transactionHash"])
        logger.info(
            "Increased liquidity token_id=%d by %d tx=%s", token_id, liquidity, tx_hash
        )
        return {"tx_hash": tx_hash}

    # ------------------------------------------------------------------
    # Internal: send modifyLiquidities transaction
    # ------------------------------------------------------------------

    def _sign_and_wait(self, tx: dict):
        signed = self.account.sign_transaction(tx)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return self.w3.eth.wait_for_transaction_receipt(tx_hash)

    def _send_modify_liquidities(
        self,
        actions: bytes,
        params: list,
        deadline: int,
        value: int = 0,
    ) -> dict:
        """Encode unlockData, build tx, sign, send, and wait for receipt."""
        unlock_data = abi_encode(["bytes", "bytes[]"], [actions, params])

        tx = self.position_manager.functions.modifyLiquidities(
            unlock_data, deadline
        ).build_transaction(
            {
                "from": self.account.address,
                "nonce": self.w3.eth.get_transaction_count(self.account.address),
                "value": value,
                "gas": 1_000_000,
                "gasPrice": self.w3.eth.gas_price,
            }
        )

        receipt = self._sign_and_wait(tx)
        if receipt["status"] != 1:
            tx_hash = Web3.to_hex(receipt["transactionHash"])
            logger.error("Transaction reverted: tx=%s", tx_hash)
            raise RuntimeError(f"modifyLiquidities reverted: {tx_hash}")

        return receipt

    # ------------------------------------------------------------------
    # Parse token ID from receipt (ERC721 Transfer event)
    # ------------------------------------------------------------------

    def _parse_token_id_from_receipt(self, receipt) -> int | None:
        """Extract minted tokenId from ERC721 Transfer(from=0x0, to, id) event."""
        transfer_topic = Web3.to_hex(self.w3.keccak(text="Transfer(address,address,uint256)"))
        zero_address_topic = "0x" + "0" * 64
        pm_address = to_checksum_address(self.config.POSITION_MANAGER).lower()

        for log in receipt.get("logs", []):
            if log["address"].lower() != pm_address:
                continue
            if len(log["topics"]) < 4:
                continue
            if Web3.to_hex(log["topics"][0]) != transfer_topic:
                continue
            # Transfer from 0x0 means a mint
            if Web3.to_hex(log["topics"][1]) == zero_address_topic:
                return int(Web3.to_hex(log["topics"][3]), 16)

        logger.warning("Could not parse token_id from receipt logs")
        return None


class PositionStore:
    """The single tracked position, persisted as JSON so restarts find it again."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict | None:
        if not self.path.exists():
            return None
        try:
            record = json.loads(self.path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Could not load position from %s, treating as empty", self.path)
            return None
        if not isinstance(record, dict):
            logger.warning("Unexpected position record in %s, treating as empty", self.path)
            return None
        return record

    def save(self, token_id, tick_lower: int, tick_upper: int) -> dict:
        record = {
            "token_id": token_id,
            "tick_lower": tick_lower,
            "tick_upper": tick_upper,
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record, indent=2))
        tmp.replace(self.path)
        logger.info("Saved position token_id=%s to %s", token_id, self.path)
        return record

    def clear(self) -> None:
        if self.path.exists():
            self.path.unlink()
            logger.info("Cleared tracked position in %s", self.path)
