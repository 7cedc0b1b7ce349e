"""Provision the stake_pools table from POOL_LOCK_DAYS."""

import logging
import sys
from decimal import Decimal

from services.common.config import load_config
from services.common.db import ensure_schema
from services.common.store import PostgresStore

logger = logging.getLogger("worker")

DEFAULT_MIN_STAKE = Decimal(100)
DEFAULT_MAX_STAKE = Decimal(1_000_000)


def pool_rows(lock_days: dict[int, int]) -> list[dict]:
    return [
        {
            "id": pool_id,
            "lock_days": days,
            "min_stake": DEFAULT_MIN_STAKE,
            "max_stake": DEFAULT_MAX_STAKE,
        }
        for pool_id, days in sorted(lock_days.items())
    ]


def main() -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)-8s] %(levelname)-5s %(message)s",
    )
    cfg = load_config()
    ensure_schema()
    rows = pool_rows(cfg.pool_lock_days)
    if not rows:
        logger.error("POOL_LOCK_DAYS is empty; nothing to provision")
        return 1
    PostgresStore().seed_pools(rows)
    for row in rows:
        logger.info("Pool %s provisioned (lock %s days)", row["id"], row["lock_days"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
