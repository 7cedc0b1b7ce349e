import datetime as dt
from dataclasses import dataclass, field
from decimal import Decimal

ACTIVE = "active"
UNSTAKED = "unstaked"

SECONDS_PER_DAY = 86400

# forward unlock horizon (days) -> daily_stake_snapshots column
UNLOCK_HORIZONS = {
    1: "unlocked_next_1day",
    2: "unlocked_next_2days",
    7: "unlocked_next_7days",
    15: "unlocked_next_15days",
    30: "unlocked_next_30days",
}


@dataclass
class PoolConfig:
    id: int
    lock_days: int
    rate_per_sec: Decimal = Decimal(0)
    total_staked: Decimal = Decimal(0)
    apy: Decimal = Decimal(0)


@dataclass
class StakeRecord:
    user_address: str
    pool_id: int
    amount: Decimal
    stake_time: int
    unlock_time: int
    tx_hash: str
    block_number: int
    lock_days: int = 0
    status: str = ACTIVE
    unstake_time: int | None = None
    close_event_id: str | None = None
    reward_amount: Decimal | None = None


@dataclass
class DailySnapshot:
    date: dt.date
    new_stake: Decimal
    new_unstake: Decimal
    active_stake: Decimal
    cumulative_stake: Decimal
    total_users: int
    unlocked: dict[int, Decimal] = field(default_factory=dict)

    def to_row(self) -> dict:
        row = {
            "date": self.date,
            "new_stake": self.new_stake,
            "new_unstake": self.new_unstake,
            "active_stake": self.active_stake,
            "cumulative_stake": self.cumulative_stake,
            "total_users": self.total_users,
        }
        for days, col in UNLOCK_HORIZONS.items():
            row[col] = self.unlocked.get(days, Decimal(0))
        return row


@dataclass
class IngestSummary:
    today: str
    new_stake: Decimal
    unstake: Decimal
    active_stake: Decimal
    cumulative_stake: Decimal
    total_users: int
    stake_count: int = 0
    unstake_count: int = 0
    reconciled: int = 0
    missed: int = 0
    pools_refreshed: int = 0

    @property
    def net_new_stake(self) -> Decimal:
        return self.new_stake - self.unstake

    def to_dict(self) -> dict:
        return {
            "today": self.today,
            "newStake": float(self.new_stake),
            "unstake": float(self.unstake),
            "netNewStake": float(self.net_new_stake),
            "activeStake": float(self.active_stake),
            "cumulativeStake": float(self.cumulative_stake),
            "totalUsers": self.total_users,
        }
