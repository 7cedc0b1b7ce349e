import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

DEFAULT_RPC_URLS = (
    "https://bsc-dataseed1.binance.org,https://bsc-dataseed2.binance.org,"
    "https://bsc-dataseed3.binance.org,https://bsc-dataseed4.binance.org,"
    "https://bsc-dataseed1.defibit.io,https://bsc-dataseed2.defibit.io,"
    "https://bsc-dataseed1.ninicoin.io,https://bsc-dataseed2.ninicoin.io"
)
DEFAULT_POOL_LOCK_DAYS = "0:1,1:15,2:30"


@dataclass
class Config:
    pg_user: str
    pg_pass: str
    pg_db: str
    pg_host: str
    pg_port: int
    database_url: str | None
    rpc_urls: list[str]
    contract_address: str
    cron_secret: str
    pool_lock_days: dict[int, int] = field(default_factory=dict)
    scan_window_blocks: int = 20_000
    rpc_timeout: float = 10.0
    rpc_cache_ttl: float = 30.0
    rpc_node_policy: str = "random"
    token_decimals: int = 18
    max_run_seconds: float = 60.0


def _split_csv(value: str) -> list[str]:
    return [s.strip() for s in value.split(",") if s.strip()]


def parse_lock_days(value: str) -> dict[int, int]:
    """Parse ``"0:1,1:15,2:30"`` into ``{0: 1, 1: 15, 2: 30}``."""
    out: dict[int, int] = {}
    for item in _split_csv(value):
        pool_id, _, days = item.partition(":")
        if not days:
            raise ValueError(f"invalid pool lock days entry: {item!r}")
        out[int(pool_id)] = int(days)
    return out


def load_config() -> Config:
    return Config(
        pg_user=os.getenv("POSTGRES_USER", "stakeuser"),
        pg_pass=os.getenv("POSTGRES_PASSWORD", "stakepass"),
        pg_db=os.getenv("POSTGRES_DB", "stakedb"),
        pg_host=os.getenv("POSTGRES_HOST", "db"),
        pg_port=int(os.getenv("POSTGRES_PORT", "5432")),
        database_url=os.getenv("DATABASE_URL") or None,
        rpc_urls=_split_csv(os.getenv("RPC_URLS", DEFAULT_RPC_URLS)),
        contract_address=os.getenv("STAKING_CONTRACT", ""),
        cron_secret=os.getenv("CRON_SECRET", ""),
        pool_lock_days=parse_lock_days(os.getenv("POOL_LOCK_DAYS", DEFAULT_POOL_LOCK_DAYS)),
        scan_window_blocks=int(os.getenv("SCAN_WINDOW_BLOCKS", "20000")),
        rpc_timeout=float(os.getenv("RPC_TIMEOUT_SECONDS", "10")),
        rpc_cache_ttl=float(os.getenv("RPC_CACHE_TTL_SECONDS", "30")),
        rpc_node_policy=os.getenv("RPC_NODE_POLICY", "random").lower(),
        token_decimals=int(os.getenv("TOKEN_DECIMALS", "18")),
        max_run_seconds=float(os.getenv("MAX_RUN_SECONDS", "60")),
    )
