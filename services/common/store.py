"""Aggregate store contract and its Postgres implementation.

Every write is its own transaction, so an aborted run leaves whole rows
behind, never half-written ones.
"""

import datetime as dt
import logging
from decimal import Decimal
from typing import Protocol

import pandas as pd
import psycopg2

from services.common import db
from services.common.errors import StoreWriteFailure
from services.common.models import ACTIVE, UNLOCK_HORIZONS, UNSTAKED, DailySnapshot, PoolConfig, StakeRecord

logger = logging.getLogger("store")

SNAPSHOT_VALUE_COLS = [
    "new_stake", "new_unstake", "active_stake", "cumulative_stake", "total_users",
    *UNLOCK_HORIZONS.values(),
]


class StakeStore(Protocol):
    def list_pools(self) -> list[PoolConfig]: ...

    def update_pool_rate(self, pool_id: int, lock_days: int, rate_per_sec: Decimal) -> None: ...

    def insert_stake(self, record: StakeRecord) -> bool: ...

    def event_applied(self, close_event_id: str) -> bool: ...

    def eligible_stakes(self, user_address: str, pool_id: int, at_time: int) -> list[StakeRecord]: ...

    def close_stake(self, tx_hash: str, unstake_time: int, close_event_id: str, reward: Decimal | None) -> bool: ...

    def active_total(self, pool_id: int | None = None) -> Decimal: ...

    def cumulative_total(self) -> Decimal: ...

    def active_user_count(self) -> int: ...

    def active_pool_ids(self) -> list[int]: ...

    def unlocking_between(self, start: int, end: int) -> Decimal: ...

    def unstaked_between(self, start: int, end: int) -> Decimal: ...

    def upsert_snapshot(self, snapshot: DailySnapshot) -> None: ...

    def set_pool_total(self, pool_id: int, total: Decimal) -> None: ...


def _dec(value) -> Decimal:
    if value is None:
        return Decimal(0)
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _records(df: pd.DataFrame) -> list[dict]:
    if df.empty:
        return []
    return df.astype(object).where(pd.notnull(df), None).to_dict(orient="records")


class PostgresStore:

    def list_pools(self) -> list[PoolConfig]:
        df = db.fetch_df("SELECT id, lock_days, rate_per_sec, total_staked, apy FROM stake_pools ORDER BY id")
        return [
            PoolConfig(
                id=int(r["id"]),
                lock_days=int(r["lock_days"]),
                rate_per_sec=_dec(r["rate_per_sec"]),
                total_staked=_dec(r["total_staked"]),
                apy=_dec(r["apy"]),
            )
            for r in _records(df)
        ]

    def seed_pools(self, pools: list[dict]) -> int:
        return db.upsert_many(
            "stake_pools", pools, ["id"],
            [c for c in pools[0] if c != "id"] if pools else [],
        )

    def update_pool_rate(self, pool_id: int, lock_days: int, rate_per_sec: Decimal) -> None:
        try:
            db.upsert_many(
                "stake_pools",
                [{"id": pool_id, "lock_days": lock_days, "rate_per_sec": rate_per_sec,
                  "updated_at": dt.datetime.now(dt.timezone.utc)}],
                ["id"],
                ["lock_days", "rate_per_sec", "updated_at"],
            )
        except psycopg2.Error as exc:
            raise StoreWriteFailure(f"pool {pool_id} rate not saved: {exc}") from exc

    def insert_stake(self, record: StakeRecord) -> bool:
        row = {
            "user_address": record.user_address,
            "pool_id": record.pool_id,
            "amount": record.amount,
            "stake_time": record.stake_time,
            "unlock_time": record.unlock_time,
            "lock_days": record.lock_days,
            "tx_hash": record.tx_hash,
            "block_number": record.block_number,
            "status": ACTIVE,
        }
        try:
            return db.upsert_many("stake_records", [row], ["tx_hash"], []) > 0
        except psycopg2.Error as exc:
            raise StoreWriteFailure(f"stake {record.tx_hash} not saved: {exc}") from exc

    def event_applied(self, close_event_id: str) -> bool:
        row = db.fetch_one(
            "SELECT 1 FROM stake_records WHERE close_event_id = %(eid)s",
            {"eid": close_event_id},
        )
        return row is not None

    def eligible_stakes(self, user_address: str, pool_id: int, at_time: int) -> list[StakeRecord]:
        df = db.fetch_df(
            """
            SELECT user_address, pool_id, amount, stake_time, unlock_time, tx_hash,
                   block_number, lock_days, status
            FROM stake_records
            WHERE user_address = %(user)s
              AND pool_id = %(pool)s
              AND status = 'active'
              AND unlock_time <= %(at)s
            ORDER BY stake_time ASC, block_number ASC, tx_hash ASC
            """,
            {"user": user_address, "pool": pool_id, "at": at_time},
        )
        return [
            StakeRecord(
                user_address=r["user_address"],
                pool_id=int(r["pool_id"]),
                amount=_dec(r["amount"]),
                stake_time=int(r["stake_time"]),
                unlock_time=int(r["unlock_time"]),
                tx_hash=r["tx_hash"],
                block_number=int(r["block_number"]),
                lock_days=int(r["lock_days"]),
                status=r["status"],
            )
            for r in _records(df)
        ]

    def close_stake(self, tx_hash: str, unstake_time: int, close_event_id: str, reward: Decimal | None) -> bool:
        try:
            updated = db.execute(
                """
                UPDATE stake_records
                SET status = %(unstaked)s,
                    unstake_time = %(ts)s,
                    close_event_id = %(eid)s,
                    reward_amount = %(reward)s
                WHERE tx_hash = %(tx)s AND status = 'active'
                """,
                {"unstaked": UNSTAKED, "ts": unstake_time, "eid": close_event_id,
                 "reward": reward, "tx": tx_hash},
            )
        except psycopg2.IntegrityError:
            # close_event_id already used by a concurrent run
            logger.info("Unstake event %s already applied elsewhere", close_event_id)
            return False
        return updated == 1

    def _sum(self, where: str, params: dict | None = None) -> Decimal:
        row = db.fetch_one(f"SELECT COALESCE(SUM(amount), 0) FROM stake_records {where}", params)
        return _dec(row[0] if row else 0)

    def active_total(self, pool_id: int | None = None) -> Decimal:
        if pool_id is None:
            return self._sum("WHERE status = 'active'")
        return self._sum("WHERE status = 'active' AND pool_id = %(pool)s", {"pool": pool_id})

    def cumulative_total(self) -> Decimal:
        return self._sum("")

    def active_pool_ids(self) -> list[int]:
        df = db.fetch_df("SELECT DISTINCT pool_id FROM stake_records WHERE status = 'active' ORDER BY pool_id")
        return [int(r["pool_id"]) for r in _records(df)]

    def active_user_count(self) -> int:
        row = db.fetch_one("SELECT COUNT(DISTINCT user_address) FROM stake_records WHERE status = 'active'")
        return int(row[0]) if row else 0

    def unlocking_between(self, start: int, end: int) -> Decimal:
        return self._sum(
            "WHERE status = 'active' AND unlock_time >= %(start)s AND unlock_time < %(end)s",
            {"start": start, "end": end},
        )

    def unstaked_between(self, start: int, end: int) -> Decimal:
        return self._sum(
            "WHERE status = 'unstaked' AND unstake_time >= %(start)s AND unstake_time < %(end)s",
            {"start": start, "end": end},
        )

    def upsert_snapshot(self, snapshot: DailySnapshot) -> None:
        row = snapshot.to_row()
        row["updated_at"] = dt.datetime.now(dt.timezone.utc)
        try:
            db.upsert_many("daily_stake_snapshots", [row], ["date"], SNAPSHOT_VALUE_COLS + ["updated_at"])
        except psycopg2.Error as exc:
            raise StoreWriteFailure(f"snapshot {snapshot.date} not saved: {exc}") from exc

    def set_pool_total(self, pool_id: int, total: Decimal) -> None:
        try:
            db.upsert_many(
                "stake_pools",
                [{"id": pool_id, "total_staked": total, "updated_at": dt.datetime.now(dt.timezone.utc)}],
                ["id"],
                ["total_staked", "updated_at"],
            )
        except psycopg2.Error as exc:
            raise StoreWriteFailure(f"pool {pool_id} total not saved: {exc}") from exc

    # read-only projections for the dashboard

    def daily_snapshots(self, days: int) -> list[dict]:
        df = db.fetch_df(
            """
            SELECT date, new_stake, new_unstake, active_stake, cumulative_stake, total_users,
                   unlocked_next_1day, unlocked_next_2days, unlocked_next_7days,
                   unlocked_next_15days, unlocked_next_30days
            FROM daily_stake_snapshots
            WHERE date >= CURRENT_DATE - %(days)s * INTERVAL '1 day'
            ORDER BY date ASC
            """,
            {"days": days},
        )
        return _records(df)

    def pools(self) -> list[dict]:
        df = db.fetch_df(
            "SELECT id, lock_days, apy, total_staked, rate_per_sec FROM stake_pools ORDER BY id"
        )
        return _records(df)

    def latest_snapshot(self) -> dict | None:
        df = db.fetch_df(
            """
            SELECT date, cumulative_stake, active_stake, total_users,
                   unlocked_next_1day, unlocked_next_2days, unlocked_next_7days,
                   unlocked_next_15days, unlocked_next_30days
            FROM daily_stake_snapshots
            ORDER BY date DESC
            LIMIT 1
            """
        )
        rows = _records(df)
        return rows[0] if rows else None
