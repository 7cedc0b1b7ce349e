"""Read-only access to the staking contract.

Wraps the JSON-RPC transport with the three calls the ingestion job needs:
the chain head, a pool's accrual rate and the decoded ``Staked`` /
``RewardPaid`` logs of a block range (each stamped with its block time).
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Protocol

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from services.common.adapters.endpoints import EndpointPool, make_policy
from services.common.adapters.rpc import JsonRpcClient
from services.common.cache import TTLCache
from services.common.config import Config
from services.common.errors import RpcError, Unavailable

logger = logging.getLogger("ledger")

STAKED = "Staked"
REWARD_PAID = "RewardPaid"

TOO_MANY_MARKERS = (
    "more than",
    "too many results",
    "response size exceeded",
    "query returned more than",
    "block range too wide",
    "range is too large",
    "exceed maximum block range",
)


def _topic(signature: str) -> str:
    return "0x" + bytes(Web3.keccak(text=signature)).hex()


@dataclass(frozen=True)
class EventSpec:
    name: str
    signature: str
    indexed: tuple[tuple[str, str], ...]
    data: tuple[tuple[str, str], ...]

    @property
    def topic0(self) -> str:
        return _topic(self.signature)


EVENTS = {
    STAKED: EventSpec(
        STAKED,
        "Staked(address,uint256,uint256,uint256)",
        indexed=(("user", "address"),),
        data=(("amount", "uint256"), ("index", "uint256"), ("stakeTime", "uint256")),
    ),
    REWARD_PAID: EventSpec(
        REWARD_PAID,
        "RewardPaid(address,uint256,uint256)",
        indexed=(("user", "address"),),
        data=(("reward", "uint256"), ("index", "uint256")),
    ),
}

RATE_PER_SEC_SELECTOR = bytes(Web3.keccak(text="ratePerSec(uint256)"))[:4]


@dataclass
class LedgerEvent:
    kind: str
    args: dict[str, Any]
    block_number: int
    transaction_hash: str
    log_index: int = 0
    timestamp: int | None = None

    @property
    def event_id(self) -> str:
        return f"{self.transaction_hash}:{self.log_index}"


class LedgerClient(Protocol):
    def current_block_height(self) -> int: ...

    def pool_rate(self, pool_id: int) -> Decimal: ...

    def events_in_range(self, kind: str, from_block: int, to_block: int) -> list[LedgerEvent]: ...


# digits of the largest uint256
DECIMAL_PRECISION = 78


def from_wei(raw: int, decimals: int = 18) -> Decimal:
    """Exact conversion, independent of the calling thread's decimal context."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return Decimal(int(raw)).scaleb(-decimals)


def _hex_to_bytes(value: str) -> bytes:
    return bytes.fromhex(value[2:] if value.startswith("0x") else value)


def _to_int(value: Any) -> int:
    if isinstance(value, str):
        return int(value, 16)
    return int(value)


def decode_log(spec: EventSpec, log: dict) -> LedgerEvent:
    topics = log.get("topics") or []
    if len(topics) < 1 + len(spec.indexed):
        raise ValueError(f"{spec.name} log has {len(topics)} topics")
    args: dict[str, Any] = {}
    for (name, typ), topic in zip(spec.indexed, topics[1:]):
        (value,) = decode([typ], _hex_to_bytes(topic))
        args[name] = value
    values = decode([t for _, t in spec.data], _hex_to_bytes(log.get("data") or "0x"))
    for (name, _), value in zip(spec.data, values):
        args[name] = value
    if "user" in args:
        args["user"] = str(args["user"]).lower()
    return LedgerEvent(
        kind=spec.name,
        args=args,
        block_number=_to_int(log["blockNumber"]),
        transaction_hash=str(log["transactionHash"]).lower(),
        log_index=_to_int(log.get("logIndex", 0)),
    )


class StakingLedger:
    """LedgerClient backed by a JSON-RPC node pool."""

    def __init__(self, rpc: JsonRpcClient, contract_address: str):
        self.rpc = rpc
        self.contract_address = contract_address

    def current_block_height(self) -> int:
        return _to_int(self.rpc.call("eth_blockNumber", []))

    def pool_rate(self, pool_id: int) -> Decimal:
        data = "0x" + (RATE_PER_SEC_SELECTOR + encode(["uint256"], [int(pool_id)])).hex()
        try:
            raw = self.rpc.call("eth_call", [{"to": self.contract_address, "data": data}, "latest"])
            (rate,) = decode(["uint256"], _hex_to_bytes(raw or "0x"))
        except RpcError as exc:
            raise Unavailable(f"ratePerSec({pool_id}) failed: {exc}", endpoint=exc.endpoint) from exc
        except (DecodingError, TypeError, ValueError) as exc:
            raise Unavailable(f"ratePerSec({pool_id}) returned undecodable data: {exc}") from exc
        return Decimal(rate)

    def block_timestamp(self, block_number: int) -> int:
        block = self.rpc.call("eth_getBlockByNumber", [hex(block_number), False])
        if not block:
            raise RpcError(f"block {block_number} not found")
        return _to_int(block["timestamp"])

    def events_in_range(self, kind: str, from_block: int, to_block: int) -> list[LedgerEvent]:
        spec = EVENTS[kind]
        logs = self._get_logs_range(spec.topic0, from_block, to_block)
        events: list[LedgerEvent] = []
        timestamps: dict[int, int] = {}
        for log in logs:
            try:
                event = decode_log(spec, log)
            except (DecodingError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping undecodable %s log in tx %s: %s", kind, log.get("transactionHash"), exc)
                continue
            if event.block_number not in timestamps:
                try:
                    timestamps[event.block_number] = self.block_timestamp(event.block_number)
                except RpcError as exc:
                    logger.warning("Block %s lookup failed, skipping %s in tx %s: %s",
                                   event.block_number, kind, event.transaction_hash, exc)
                    continue
            event.timestamp = timestamps[event.block_number]
            events.append(event)
        return events

    def _get_logs(self, topic0: str, from_block: int, to_block: int) -> list[dict]:
        return self.rpc.call(
            "eth_getLogs",
            [{
                "address": self.contract_address,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
                "topics": [topic0],
            }],
        ) or []

    def _get_logs_range(self, topic0: str, from_block: int, to_block: int, max_splits: int = 12) -> list[dict]:
        try:
            return self._get_logs(topic0, from_block, to_block)
        except RpcError as exc:
            msg = str(exc).lower()
            too_many = any(s in msg for s in TOO_MANY_MARKERS)
            if not too_many or max_splits <= 0 or from_block >= to_block:
                raise
            mid = (from_block + to_block) // 2
            logger.info("Splitting getLogs range %s-%s at %s", from_block, to_block, mid)
            left = self._get_logs_range(topic0, from_block, mid, max_splits - 1)
            right = self._get_logs_range(topic0, mid + 1, to_block, max_splits - 1)
            return left + right


def build_ledger_client(cfg: Config) -> StakingLedger:
    """Fresh client per run, so nothing is cached between runs."""
    if not cfg.contract_address:
        raise ValueError("STAKING_CONTRACT is not configured")
    pool = EndpointPool(cfg.rpc_urls, policy=make_policy(cfg.rpc_node_policy))
    rpc = JsonRpcClient(pool, timeout=cfg.rpc_timeout, cache=TTLCache(cfg.rpc_cache_ttl))
    return StakingLedger(rpc, cfg.contract_address)
