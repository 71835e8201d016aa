"""Escrow factory implementation backed by web3.py.

Events are read with eth_getLogs. The live feed is a polling loop over
new blocks, so it works against plain HTTP RPC endpoints; gaps it misses
are picked up by the order monitor's reconciliation.
"""

import asyncio
import logging
from typing import Any, Optional

from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError

from htlc_resolver.errors import TransactionReverted, TransientError
from htlc_resolver.models import OrderStatus, SwapOrder
from htlc_resolver.source.base import (
    EscrowFactory,
    EventCallback,
    FactoryEvent,
    FactoryEventType,
)

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Gas limits for factory transactions
MATCH_GAS_LIMIT = 600_000
COMPLETE_GAS_LIMIT = 150_000
CANCEL_GAS_LIMIT = 150_000


def _event_abi(name: str, inputs: list[tuple[str, str, bool]]) -> dict:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": i} for n, t, i in inputs],
    }


def _function_abi(
    name: str,
    inputs: list[tuple[str, str]],
    outputs: list[dict],
    mutability: str = "view",
) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


ORDER_COMPONENTS = [
    {"name": "orderHash", "type": "bytes32"},
    {"name": "maker", "type": "address"},
    {"name": "sourceToken", "type": "address"},
    {"name": "sourceAmount", "type": "uint256"},
    {"name": "destinationChainId", "type": "uint256"},
    {"name": "destinationToken", "type": "bytes"},
    {"name": "destinationAmount", "type": "uint256"},
    {"name": "destinationAddress", "type": "bytes"},
    {"name": "resolverFeeAmount", "type": "uint256"},
    {"name": "expiryTime", "type": "uint256"},
    {"name": "chainSpecificParams", "type": "bytes"},
    {"name": "isActive", "type": "bool"},
    {"name": "hashlock", "type": "bytes32"},
]

FACTORY_ABI = [
    _event_abi(
        "FusionOrderCreated",
        [
            ("orderHash", "bytes32", True),
            ("maker", "address", True),
            ("sourceToken", "address", False),
            ("sourceAmount", "uint256", False),
            ("destinationChainId", "uint256", False),
            ("destinationToken", "bytes", False),
            ("destinationAmount", "uint256", False),
            ("destinationAddress", "bytes", False),
            ("resolverFeeAmount", "uint256", False),
            ("expiryTime", "uint256", False),
            ("hashlock", "bytes32", False),
        ],
    ),
    _event_abi(
        "FusionOrderMatched",
        [
            ("orderHash", "bytes32", True),
            ("resolver", "address", True),
            ("sourceEscrow", "address", False),
            ("destinationEscrow", "address", False),
            ("hashlock", "bytes32", False),
            ("safetyDeposit", "uint256", False),
        ],
    ),
    _event_abi(
        "FusionOrderCompleted",
        [("orderHash", "bytes32", True), ("resolver", "address", True), ("secret", "bytes32", False)],
    ),
    _event_abi(
        "FusionOrderCancelled",
        [("orderHash", "bytes32", True), ("maker", "address", True)],
    ),
    _function_abi(
        "getOrder",
        [("orderHash", "bytes32")],
        [{"name": "", "type": "tuple", "components": ORDER_COMPONENTS}],
    ),
    _function_abi("sourceEscrows", [("orderHash", "bytes32")], [{"name": "", "type": "address"}]),
    _function_abi("registry", [], [{"name": "", "type": "address"}]),
    _function_abi(
        "matchFusionOrder",
        [("orderHash", "bytes32")],
        [{"name": "sourceEscrow", "type": "address"}, {"name": "destinationEscrow", "type": "address"}],
        mutability="payable",
    ),
    _function_abi(
        "completeFusionOrder",
        [("orderHash", "bytes32"), ("secret", "bytes32")],
        [{"name": "", "type": "bool"}],
        mutability="nonpayable",
    ),
    _function_abi(
        "cancelFusionOrder",
        [("orderHash", "bytes32")],
        [],
        mutability="nonpayable",
    ),
]

REGISTRY_ABI = [
    _function_abi(
        "calculateMinSafetyDeposit",
        [("destinationChainId", "uint256"), ("sourceAmount", "uint256")],
        [{"name": "", "type": "uint256"}],
    ),
    _function_abi(
        "estimateExecutionCost",
        [("destinationChainId", "uint256"), ("params", "bytes"), ("amount", "uint256")],
        [{"name": "", "type": "uint256"}],
    ),
    _function_abi("getSupportedChainIds", [], [{"name": "", "type": "uint256[]"}]),
]

_EVENT_TYPES = {
    "FusionOrderCreated": FactoryEventType.ORDER_CREATED,
    "FusionOrderMatched": FactoryEventType.ORDER_MATCHED,
    "FusionOrderCompleted": FactoryEventType.ORDER_COMPLETED,
    "FusionOrderCancelled": FactoryEventType.ORDER_CANCELLED,
}


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    text = str(value)
    return text if text.startswith("0x") else "0x" + text


def _to_bytes32(order_hash: str) -> bytes:
    raw = bytes.fromhex(order_hash.replace("0x", ""))
    if len(raw) != 32:
        raise ValueError(f"Order hash must be 32 bytes: {order_hash}")
    return raw


class Web3EscrowFactory(EscrowFactory):
    """EscrowFactory over an EVM JSON-RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        factory_address: str,
        chain_id: int,
        private_key: Optional[str] = None,
        receipt_timeout: float = 180.0,
        poll_interval: float = 12.0,
        w3: Optional[AsyncWeb3] = None,
    ):
        self.rpc_url = rpc_url
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self.poll_interval = poll_interval
        self.w3 = w3 or AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))
        self.factory_address = AsyncWeb3.to_checksum_address(factory_address)
        self.factory = self.w3.eth.contract(address=self.factory_address, abi=FACTORY_ABI)
        self._registry = None
        self._account = Account.from_key(private_key) if private_key else None
        self._send_lock = asyncio.Lock()
        self._feed_task: Optional[asyncio.Task] = None

    @property
    def resolver_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    async def _call(self, description: str, awaitable):
        try:
            return await awaitable
        except ContractLogicError as e:
            raise TransactionReverted(f"{description} reverted: {e}") from e
        except Exception as e:
            raise TransientError(f"{description} failed: {e}") from e

    async def _get_registry(self):
        if self._registry is None:
            address = await self._call("registry()", self.factory.functions.registry().call())
            self._registry = self.w3.eth.contract(address=address, abi=REGISTRY_ABI)
        return self._registry

    # ---- queries ----

    async def get_order(self, order_hash: str) -> Optional[SwapOrder]:
        raw = await self._call(
            f"getOrder({order_hash})",
            self.factory.functions.getOrder(_to_bytes32(order_hash)).call(),
        )
        (
            _, maker, source_token, source_amount, destination_chain_id,
            destination_token, destination_amount, _destination_address,
            resolver_fee, expiry, params, is_active, hashlock,
        ) = raw
        if maker == ZERO_ADDRESS:
            return None

        escrow = await self.get_source_escrow(order_hash)
        if is_active:
            status = OrderStatus.MATCHED if escrow else OrderStatus.CREATED
        else:
            # Inactive orders that were matched settled; unmatched ones were withdrawn
            status = OrderStatus.COMPLETED if escrow else OrderStatus.CANCELLED

        return SwapOrder(
            order_hash=order_hash,
            maker=maker,
            source_token=source_token,
            source_amount=int(source_amount),
            destination_chain_id=int(destination_chain_id),
            destination_token=_hex(destination_token),
            destination_amount=int(destination_amount),
            resolver_fee=int(resolver_fee),
            expiry=int(expiry),
            hashlock=bytes(hashlock),
            execution_params=bytes(params),
            status=status,
        )

    async def get_supported_chains(self) -> list[int]:
        registry = await self._get_registry()
        chains = await self._call(
            "getSupportedChainIds()", registry.functions.getSupportedChainIds().call()
        )
        return [int(c) for c in chains]

    async def calculate_min_safety_deposit(self, chain_id: int, amount: int) -> int:
        registry = await self._get_registry()
        return int(
            await self._call(
                "calculateMinSafetyDeposit",
                registry.functions.calculateMinSafetyDeposit(chain_id, amount).call(),
            )
        )

    async def estimate_execution_cost(self, chain_id: int, params: bytes, amount: int) -> int:
        registry = await self._get_registry()
        return int(
            await self._call(
                "estimateExecutionCost",
                registry.functions.estimateExecutionCost(chain_id, params, amount).call(),
            )
        )

    async def get_source_escrow(self, order_hash: str) -> Optional[str]:
        address = await self._call(
            f"sourceEscrows({order_hash})",
            self.factory.functions.sourceEscrows(_to_bytes32(order_hash)).call(),
        )
        return None if address == ZERO_ADDRESS else address

    async def get_block_number(self) -> int:
        return int(await self._call("eth_blockNumber", self.w3.eth.block_number))

    async def get_gas_price(self) -> int:
        return int(await self._call("eth_gasPrice", self.w3.eth.gas_price))

    async def get_events(self, from_block: int, to_block: int) -> list[FactoryEvent]:
        if to_block < from_block:
            return []

        events: list[FactoryEvent] = []
        for name in _EVENT_TYPES:
            event = getattr(self.factory.events, name)
            logs = await self._call(
                f"{name} logs {from_block}-{to_block}",
                event.get_logs(from_block=from_block, to_block=to_block),
            )
            events.extend(self._parse_log(name, log) for log in logs)

        events.sort(key=lambda e: (e.block_number, e.log_index))
        return events

    def _parse_log(self, name: str, log) -> FactoryEvent:
        args = log["args"]
        if name == "FusionOrderCreated":
            data = {
                "maker": args["maker"],
                "source_amount": int(args["sourceAmount"]),
                "destination_chain_id": int(args["destinationChainId"]),
                "hashlock": bytes(args["hashlock"]),
            }
        elif name == "FusionOrderMatched":
            data = {"resolver": args["resolver"], "safety_deposit": int(args["safetyDeposit"])}
        elif name == "FusionOrderCompleted":
            data = {"resolver": args["resolver"], "secret": bytes(args["secret"])}
        else:
            data = {"reason": "cancelled by maker", "maker": args["maker"]}

        return FactoryEvent(
            event_type=_EVENT_TYPES[name],
            order_hash=_hex(args["orderHash"]),
            block_number=int(log["blockNumber"]),
            transaction_hash=_hex(log["transactionHash"]),
            log_index=int(log.get("logIndex", 0)),
            data=data,
        )

    # ---- transactions ----

    async def _send(self, description: str, function, gas: int, value: int = 0) -> str:
        if self._account is None:
            raise TransactionReverted(f"{description}: no resolver key configured")

        async with self._send_lock:
            nonce = await self._call(
                "eth_getTransactionCount",
                self.w3.eth.get_transaction_count(self._account.address, "pending"),
            )
            gas_price = await self.get_gas_price()
            tx = await self._call(
                f"{description} build",
                function.build_transaction(
                    {
                        "from": self._account.address,
                        "nonce": nonce,
                        "gas": gas,
                        "gasPrice": gas_price,
                        "value": value,
                        "chainId": self.chain_id,
                    }
                ),
            )
            signed = self._account.sign_transaction(tx)
            tx_hash = await self._call(
                f"{description} send", self.w3.eth.send_raw_transaction(signed.raw_transaction)
            )

        tx_hash_hex = _hex(tx_hash)
        logger.info(f"{description} sent: {tx_hash_hex}")

        receipt = await self._call(
            f"{description} receipt",
            self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout),
        )
        if receipt["status"] != 1:
            raise TransactionReverted(f"{description} reverted in {tx_hash_hex}")

        logger.info(f"{description} confirmed in block {receipt['blockNumber']}")
        return tx_hash_hex

    async def match_order(self, order_hash: str, safety_deposit: int) -> str:
        return await self._send(
            f"matchFusionOrder({order_hash})",
            self.factory.functions.matchFusionOrder(_to_bytes32(order_hash)),
            gas=MATCH_GAS_LIMIT,
            value=safety_deposit,
        )

    async def complete_order(self, order_hash: str, secret: bytes) -> str:
        return await self._send(
            f"completeFusionOrder({order_hash})",
            self.factory.functions.completeFusionOrder(_to_bytes32(order_hash), secret),
            gas=COMPLETE_GAS_LIMIT,
        )

    async def cancel_order(self, order_hash: str) -> str:
        return await self._send(
            f"cancelFusionOrder({order_hash})",
            self.factory.functions.cancelFusionOrder(_to_bytes32(order_hash)),
            gas=CANCEL_GAS_LIMIT,
        )

    # ---- live feed ----

    async def subscribe(self, callback: EventCallback) -> None:
        if self._feed_task and not self._feed_task.done():
            return
        start_block = await self.get_block_number()
        self._feed_task = asyncio.create_task(self._poll_events(callback, start_block))
        logger.info(f"Subscribed to factory events from block {start_block}")

    async def unsubscribe(self) -> None:
        if self._feed_task is None:
            return
        self._feed_task.cancel()
        try:
            await self._feed_task
        except asyncio.CancelledError:
            pass
        self._feed_task = None
        logger.info("Unsubscribed from factory events")

    async def _poll_events(self, callback: EventCallback, cursor: int) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                current = await self.get_block_number()
                if current <= cursor:
                    continue
                for event in await self.get_events(cursor + 1, current):
                    try:
                        await callback(event)
                    except Exception as e:
                        logger.error(f"Event callback failed for {event.order_hash}: {e}")
                cursor = current
            except TransientError as e:
                logger.warning(f"Event poll failed, will retry: {e}")
