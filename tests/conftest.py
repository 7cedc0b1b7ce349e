import dataclasses
import datetime as dt
from decimal import Decimal

import pytest

from services.common.adapters.ledger import REWARD_PAID, STAKED, LedgerEvent
from services.common.config import Config
from services.common.errors import RpcError, StoreWriteFailure, Unavailable
from services.common.models import ACTIVE, UNLOCK_HORIZONS, UNSTAKED, DailySnapshot, PoolConfig, StakeRecord

DAY = 86400
DAY_START = 1_699_920_000  # 2023-11-14 00:00:00 UTC
NOW = DAY_START + 12 * 3600
WEI = 10 ** 18


class MemoryStore:
    """In-memory stand-in for PostgresStore with the same conflict rules."""

    def __init__(self, pools=None):
        self.pools_by_id: dict[int, PoolConfig] = {p.id: p for p in (pools or [])}
        self.records: dict[str, StakeRecord] = {}
        self.snapshots: dict[dt.date, DailySnapshot] = {}
        self.fail_snapshot = False
        self.fail_insert_for: set[str] = set()
        self.writes = 0

    def list_pools(self):
        return [dataclasses.replace(p) for _, p in sorted(self.pools_by_id.items())]

    def update_pool_rate(self, pool_id, lock_days, rate_per_sec):
        pool = self.pools_by_id.setdefault(pool_id, PoolConfig(id=pool_id, lock_days=lock_days))
        pool.lock_days = lock_days
        pool.rate_per_sec = rate_per_sec
        self.writes += 1

    def insert_stake(self, record):
        if record.tx_hash in self.fail_insert_for:
            raise StoreWriteFailure(f"stake {record.tx_hash} not saved: boom")
        self.writes += 1
        if record.tx_hash in self.records:
            return False
        self.records[record.tx_hash] = dataclasses.replace(record)
        return True

    def event_applied(self, close_event_id):
        return any(r.close_event_id == close_event_id for r in self.records.values())

    def eligible_stakes(self, user_address, pool_id, at_time):
        rows = [
            dataclasses.replace(r) for r in self.records.values()
            if r.user_address == user_address and r.pool_id == pool_id
            and r.status == ACTIVE and r.unlock_time <= at_time
        ]
        return sorted(rows, key=lambda r: (r.stake_time, r.block_number, r.tx_hash))

    def close_stake(self, tx_hash, unstake_time, close_event_id, reward):
        record = self.records.get(tx_hash)
        if record is None or record.status != ACTIVE or self.event_applied(close_event_id):
            return False
        record.status = UNSTAKED
        record.unstake_time = unstake_time
        record.close_event_id = close_event_id
        record.reward_amount = reward
        self.writes += 1
        return True

    def active_total(self, pool_id=None):
        return sum(
            (r.amount for r in self.records.values()
             if r.status == ACTIVE and (pool_id is None or r.pool_id == pool_id)),
            Decimal(0),
        )

    def cumulative_total(self):
        return sum((r.amount for r in self.records.values()), Decimal(0))

    def active_pool_ids(self):
        return sorted({r.pool_id for r in self.records.values() if r.status == ACTIVE})

    def active_user_count(self):
        return len({r.user_address for r in self.records.values() if r.status == ACTIVE})

    def unlocking_between(self, start, end):
        return sum(
            (r.amount for r in self.records.values()
             if r.status == ACTIVE and start <= r.unlock_time < end),
            Decimal(0),
        )

    def unstaked_between(self, start, end):
        return sum(
            (r.amount for r in self.records.values()
             if r.status == UNSTAKED and start <= r.unstake_time < end),
            Decimal(0),
        )

    def upsert_snapshot(self, snapshot):
        if self.fail_snapshot:
            raise StoreWriteFailure(f"snapshot {snapshot.date} not saved: disk full")
        self.snapshots[snapshot.date] = dataclasses.replace(snapshot, unlocked=dict(snapshot.unlocked))
        self.writes += 1

    def set_pool_total(self, pool_id, total):
        pool = self.pools_by_id.setdefault(pool_id, PoolConfig(id=pool_id, lock_days=0))
        pool.total_staked = total
        self.writes += 1

    # read projections

    def daily_snapshots(self, days):
        return [self._snapshot_row(s) for _, s in sorted(self.snapshots.items())][-days:]

    def pools(self):
        return [
            {"id": p.id, "lock_days": p.lock_days, "apy": p.apy,
             "total_staked": p.total_staked, "rate_per_sec": p.rate_per_sec}
            for _, p in sorted(self.pools_by_id.items())
        ]

    def latest_snapshot(self):
        if not self.snapshots:
            return None
        return self._snapshot_row(self.snapshots[max(self.snapshots)])

    @staticmethod
    def _snapshot_row(snapshot):
        return snapshot.to_row()


class FakeLedger:
    def __init__(self, height=1_000_000, rates=None):
        self.height = height
        self.rates = rates if rates is not None else {0: Decimal(1), 1: Decimal(2), 2: Decimal(3)}
        self.events: dict[str, list[LedgerEvent]] = {STAKED: [], REWARD_PAID: []}
        self.failing_kinds: set[str] = set()
        self.ranges: list[tuple[str, int, int]] = []

    def current_block_height(self):
        return self.height

    def pool_rate(self, pool_id):
        rate = self.rates.get(pool_id)
        if rate is None:
            raise Unavailable(f"ratePerSec({pool_id}) failed: execution reverted")
        return rate

    def events_in_range(self, kind, from_block, to_block):
        self.ranges.append((kind, from_block, to_block))
        if kind in self.failing_kinds:
            raise RpcError(f"{kind} logs: request timed out")
        return [
            dataclasses.replace(e, args=dict(e.args)) for e in self.events[kind]
            if from_block <= e.block_number <= to_block
        ]

    def add_stake(self, user, amount, pool_id, stake_time, block, tx_hash, ts=None, log_index=0):
        self.events[STAKED].append(LedgerEvent(
            kind=STAKED,
            args={"user": user, "amount": int(Decimal(amount) * WEI), "index": pool_id, "stakeTime": stake_time},
            block_number=block,
            transaction_hash=tx_hash,
            log_index=log_index,
            timestamp=stake_time if ts is None else ts,
        ))

    def add_reward(self, user, pool_id, ts, block, tx_hash, reward=1, log_index=0):
        self.events[REWARD_PAID].append(LedgerEvent(
            kind=REWARD_PAID,
            args={"user": user, "reward": int(Decimal(reward) * WEI), "index": pool_id},
            block_number=block,
            transaction_hash=tx_hash,
            log_index=log_index,
            timestamp=ts,
        ))


def default_pools():
    return [PoolConfig(id=0, lock_days=1), PoolConfig(id=1, lock_days=15), PoolConfig(id=2, lock_days=30)]


@pytest.fixture
def cfg():
    return Config(
        pg_user="u", pg_pass="p", pg_db="d", pg_host="localhost", pg_port=5432,
        database_url=None,
        rpc_urls=["http://node-a", "http://node-b"],
        contract_address="0x" + "ab" * 20,
        cron_secret="s3cret",
        pool_lock_days={0: 1, 1: 15, 2: 30},
        scan_window_blocks=20_000,
        max_run_seconds=60,
    )


@pytest.fixture
def store():
    return MemoryStore(default_pools())


@pytest.fixture
def ledger():
    return FakeLedger()


def unlocked_values(snapshot):
    return [snapshot.unlocked[d] for d in sorted(UNLOCK_HORIZONS)]
