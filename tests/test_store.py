import datetime as dt
from decimal import Decimal

import pandas as pd
import psycopg2
import pytest

from services.common import store as store_mod
from services.common.errors import StoreWriteFailure
from services.common.models import DailySnapshot, StakeRecord
from services.common.store import PostgresStore


class RecordingDb:
    """Captures what PostgresStore hands to the db helpers."""

    def __init__(self):
        self.upserts = []
        self.executes = []
        self.queries = []
        self.rowcount = 1
        self.one = (Decimal("0"),)
        self.df = pd.DataFrame()
        self.raise_on_write = None

    def upsert_many(self, table, rows, conflict_cols, update_cols):
        if self.raise_on_write:
            raise self.raise_on_write
        self.upserts.append((table, rows, conflict_cols, update_cols))
        return self.rowcount

    def execute(self, sql, params=None):
        if self.raise_on_write:
            raise self.raise_on_write
        self.executes.append((sql, params))
        return self.rowcount

    def fetch_one(self, sql, params=None):
        self.queries.append((sql, params))
        return self.one

    def fetch_df(self, sql, params=None):
        self.queries.append((sql, params))
        return self.df


@pytest.fixture
def fake_db(monkeypatch):
    fake = RecordingDb()
    for name in ("upsert_many", "execute", "fetch_one", "fetch_df"):
        monkeypatch.setattr(store_mod.db, name, getattr(fake, name))
    return fake


def record(tx="0xabc"):
    return StakeRecord(
        user_address="0xuser", pool_id=1, amount=Decimal("2.5"), stake_time=100,
        unlock_time=100 + 15 * 86400, tx_hash=tx, block_number=7, lock_days=15,
    )


def test_insert_stake_ignores_duplicate_hash(fake_db):
    assert PostgresStore().insert_stake(record()) is True
    table, rows, conflict, update = fake_db.upserts[0]
    assert table == "stake_records"
    assert conflict == ["tx_hash"] and update == []
    assert rows[0]["status"] == "active"

    fake_db.rowcount = 0
    assert PostgresStore().insert_stake(record()) is False


def test_insert_stake_wraps_driver_errors(fake_db):
    fake_db.raise_on_write = psycopg2.OperationalError("server closed the connection")
    with pytest.raises(StoreWriteFailure, match="0xabc"):
        PostgresStore().insert_stake(record())


def test_close_stake_is_conditional_on_active(fake_db):
    assert PostgresStore().close_stake("0xabc", 500, "0xr:0", Decimal(1)) is True
    sql, params = fake_db.executes[0]
    assert "status = 'active'" in sql
    assert params["eid"] == "0xr:0" and params["unstaked"] == "unstaked"

    fake_db.rowcount = 0
    assert PostgresStore().close_stake("0xabc", 500, "0xr:1", None) is False


def test_close_stake_lost_race_returns_false(fake_db):
    fake_db.raise_on_write = psycopg2.IntegrityError("duplicate key value violates unique constraint")
    assert PostgresStore().close_stake("0xabc", 500, "0xr:0", None) is False


def test_unlocking_window_is_half_open(fake_db):
    fake_db.one = (Decimal("42.5"),)
    assert PostgresStore().unlocking_between(10, 20) == Decimal("42.5")
    sql, params = fake_db.queries[-1]
    assert "unlock_time >= %(start)s AND unlock_time < %(end)s" in sql
    assert params == {"start": 10, "end": 20}


def test_active_total_per_pool(fake_db):
    PostgresStore().active_total(2)
    sql, params = fake_db.queries[-1]
    assert "pool_id = %(pool)s" in sql and params == {"pool": 2}


def test_snapshot_upsert_overwrites_the_day(fake_db):
    snap = DailySnapshot(
        date=dt.date(2023, 11, 14), new_stake=Decimal(1), new_unstake=Decimal(0),
        active_stake=Decimal(5), cumulative_stake=Decimal(9), total_users=2,
    )
    PostgresStore().upsert_snapshot(snap)
    table, rows, conflict, update = fake_db.upserts[0]
    assert table == "daily_stake_snapshots" and conflict == ["date"]
    assert "active_stake" in update and "unlocked_next_30days" in update
    assert rows[0]["unlocked_next_7days"] == Decimal(0)


def test_snapshot_write_failure(fake_db):
    fake_db.raise_on_write = psycopg2.OperationalError("disk full")
    snap = DailySnapshot(
        date=dt.date(2023, 11, 14), new_stake=Decimal(0), new_unstake=Decimal(0),
        active_stake=Decimal(0), cumulative_stake=Decimal(0), total_users=0,
    )
    with pytest.raises(StoreWriteFailure, match="disk full"):
        PostgresStore().upsert_snapshot(snap)


def test_eligible_stakes_maps_rows(fake_db):
    fake_db.df = pd.DataFrame([{
        "user_address": "0xuser", "pool_id": 1, "amount": Decimal("3"), "stake_time": 10,
        "unlock_time": 20, "tx_hash": "0x1", "block_number": 5, "lock_days": 15, "status": "active",
    }])
    rows = PostgresStore().eligible_stakes("0xuser", 1, 30)
    assert rows == [StakeRecord(
        user_address="0xuser", pool_id=1, amount=Decimal(3), stake_time=10, unlock_time=20,
        tx_hash="0x1", block_number=5, lock_days=15,
    )]
    sql, params = fake_db.queries[-1]
    assert "ORDER BY stake_time ASC, block_number ASC, tx_hash ASC" in sql
    assert params == {"user": "0xuser", "pool": 1, "at": 30}


def test_latest_snapshot_empty_table(fake_db):
    assert PostgresStore().latest_snapshot() is None


def test_pool_total_upserts_missing_pool_row(fake_db):
    PostgresStore().set_pool_total(7, Decimal(10))
    table, rows, conflict, update = fake_db.upserts[0]
    assert table == "stake_pools" and conflict == ["id"]
    assert rows[0]["id"] == 7 and rows[0]["total_staked"] == Decimal(10)
    assert update == ["total_staked", "updated_at"]


def test_active_pool_ids(fake_db):
    fake_db.df = pd.DataFrame([{"pool_id": 0}, {"pool_id": 7}])
    assert PostgresStore().active_pool_ids() == [0, 7]
    sql, _ = fake_db.queries[-1]
    assert "DISTINCT pool_id" in sql and "status = 'active'" in sql
