import datetime as dt
import logging
import time
from decimal import Decimal, localcontext
from typing import Callable, Iterable

from services.common.adapters.ledger import DECIMAL_PRECISION, REWARD_PAID, STAKED, LedgerClient, LedgerEvent, from_wei
from services.common.config import Config, load_config
from services.common.errors import ReconciliationMiss, RpcError, RunDeadlineExceeded, StoreWriteFailure, Unavailable
from services.common.matching import FifoMatcher, MatchingStrategy
from services.common.models import (
    SECONDS_PER_DAY,
    UNLOCK_HORIZONS,
    DailySnapshot,
    IngestSummary,
    PoolConfig,
    StakeRecord,
)
from services.common.store import StakeStore

logger = logging.getLogger("ingest")


class Deadline:
    """Wall-clock budget for one run, checked between row writes."""

    def __init__(self, seconds: float | None, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def check(self, stage: str) -> None:
        if self._expires_at is not None and self._clock() >= self._expires_at:
            raise RunDeadlineExceeded(f"run budget exhausted during {stage}")


def _pools(store: StakeStore, cfg: Config) -> list[PoolConfig]:
    pools = store.list_pools()
    if pools:
        return pools
    return [PoolConfig(id=pid, lock_days=days) for pid, days in sorted(cfg.pool_lock_days.items())]


def refresh_pool_rates(ledger: LedgerClient, store: StakeStore, pools: Iterable[PoolConfig]) -> int:
    refreshed = 0
    for pool in pools:
        try:
            rate = ledger.pool_rate(pool.id)
        except Unavailable as exc:
            logger.warning("Pool %s rate refresh failed: %s", pool.id, exc)
            continue
        try:
            store.update_pool_rate(pool.id, pool.lock_days, rate)
        except StoreWriteFailure as exc:
            logger.warning("Pool %s rate not saved: %s", pool.id, exc)
            continue
        pool.rate_per_sec = rate
        refreshed += 1
        logger.info("Pool %s rate updated: %s", pool.id, rate)
    return refreshed


def fetch_events(ledger: LedgerClient, kind: str, from_block: int, to_block: int) -> list[LedgerEvent]:
    try:
        events = ledger.events_in_range(kind, from_block, to_block)
    except RpcError as exc:
        logger.warning("Fetching %s events %s-%s failed, continuing without them: %s",
                       kind, from_block, to_block, exc)
        return []
    usable = []
    for ev in events:
        if ev.timestamp is None:
            logger.warning("%s in tx %s has no block time, skipped", kind, ev.transaction_hash)
            continue
        usable.append(ev)
    usable.sort(key=lambda e: (e.block_number, e.log_index))
    return usable


def stake_record_from_event(event: LedgerEvent, lock_days: dict[int, int], decimals: int) -> StakeRecord:
    pool_id = int(event.args["index"])
    if pool_id not in lock_days:
        logger.warning("Stake in tx %s names unknown pool %s; assuming no lock", event.transaction_hash, pool_id)
    days = lock_days.get(pool_id, 0)
    stake_time = int(event.args["stakeTime"])
    return StakeRecord(
        user_address=str(event.args["user"]).lower(),
        pool_id=pool_id,
        amount=from_wei(event.args["amount"], decimals),
        stake_time=stake_time,
        unlock_time=stake_time + days * SECONDS_PER_DAY,
        tx_hash=event.transaction_hash,
        block_number=event.block_number,
        lock_days=days,
    )


def ingest_stakes(
    store: StakeStore,
    events: list[LedgerEvent],
    lock_days: dict[int, int],
    day_start: int,
    decimals: int,
    deadline: Deadline,
) -> tuple[Decimal, int]:
    """Insert every stake in the window; return today's (total, count)."""
    new_stake = Decimal(0)
    count = 0
    seen: set[str] = set()
    for event in events:
        deadline.check("stake ingestion")
        record = stake_record_from_event(event, lock_days, decimals)
        try:
            if not store.insert_stake(record):
                logger.debug("Stake %s already recorded", record.tx_hash)
        except StoreWriteFailure as exc:
            logger.error("Saving stake %s failed: %s", record.tx_hash, exc)
        if event.timestamp >= day_start and record.tx_hash not in seen:
            seen.add(record.tx_hash)
            new_stake += record.amount
            count += 1
    return new_stake, count


def reconcile_unstake(
    store: StakeStore,
    event: LedgerEvent,
    matcher: MatchingStrategy,
    decimals: int,
) -> StakeRecord | None:
    """Close the stake an unstake event settles.

    Returns None when the event was already applied by an earlier or
    concurrent run; raises ReconciliationMiss when nothing is eligible.
    """
    event_id = event.event_id
    if store.event_applied(event_id):
        return None
    user = str(event.args["user"]).lower()
    pool_id = int(event.args["index"])
    reward = event.args.get("reward")
    reward_amount = from_wei(reward, decimals) if reward is not None else None

    candidates = store.eligible_stakes(user, pool_id, event.timestamp)
    for record in matcher.rank(event, candidates):
        if store.close_stake(record.tx_hash, event.timestamp, event_id, reward_amount):
            return record
        if store.event_applied(event_id):
            return None
    raise ReconciliationMiss(
        f"no eligible active stake for {user} in pool {pool_id} at {event.timestamp} (event {event_id})"
    )


def reconcile_unstakes(
    store: StakeStore,
    events: list[LedgerEvent],
    matcher: MatchingStrategy,
    day_start: int,
    decimals: int,
    deadline: Deadline,
) -> tuple[int, int, int]:
    """Returns (closed, missed, today's event count)."""
    closed = missed = today = 0
    today_rewards = Decimal(0)
    for event in events:
        deadline.check("unstake reconciliation")
        if event.timestamp >= day_start:
            today += 1
            if event.args.get("reward") is not None:
                today_rewards += from_wei(event.args["reward"], decimals)
        try:
            record = reconcile_unstake(store, event, matcher, decimals)
        except ReconciliationMiss as exc:
            missed += 1
            logger.warning("Unstake not reconciled: %s", exc)
            continue
        if record is not None:
            closed += 1
            logger.info("Stake %s (%s, pool %s) closed by %s",
                        record.tx_hash, record.user_address, record.pool_id, event.event_id)
    if today:
        logger.info("Today's RewardPaid events: %d (rewards %s)", today, today_rewards)
    return closed, missed, today


def compute_snapshot(store: StakeStore, today: dt.date, now: int, day_start: int, new_stake: Decimal) -> DailySnapshot:
    unlocked = {
        days: store.unlocking_between(now, now + days * SECONDS_PER_DAY)
        for days in UNLOCK_HORIZONS
    }
    return DailySnapshot(
        date=today,
        new_stake=new_stake,
        new_unstake=store.unstaked_between(day_start, day_start + SECONDS_PER_DAY),
        active_stake=store.active_total(),
        cumulative_stake=store.cumulative_total(),
        total_users=store.active_user_count(),
        unlocked=unlocked,
    )


def run_ingest_cycle(
    ledger: LedgerClient | None = None,
    store: StakeStore | None = None,
    cfg: Config | None = None,
    matcher: MatchingStrategy | None = None,
    now: int | None = None,
    deadline: Deadline | None = None,
) -> IngestSummary:
    """Run one ingestion cycle with uint256-wide decimal precision in the calling thread."""
    with localcontext() as ctx:
        ctx.prec = DECIMAL_PRECISION
        return _run_ingest_cycle(ledger, store, cfg, matcher, now, deadline)


def _run_ingest_cycle(
    ledger: LedgerClient | None,
    store: StakeStore | None,
    cfg: Config | None,
    matcher: MatchingStrategy | None,
    now: int | None,
    deadline: Deadline | None,
) -> IngestSummary:
    cfg = cfg or load_config()
    if ledger is None:
        from services.common.adapters.ledger import build_ledger_client
        ledger = build_ledger_client(cfg)
    if store is None:
        from services.common.store import PostgresStore
        store = PostgresStore()
    matcher = matcher or FifoMatcher()
    deadline = deadline or Deadline(cfg.max_run_seconds)

    now = int(time.time()) if now is None else int(now)
    day_start = now - (now % SECONDS_PER_DAY)
    today = dt.datetime.fromtimestamp(now, tz=dt.timezone.utc).date()

    current_block = ledger.current_block_height()
    from_block = max(0, current_block - cfg.scan_window_blocks)
    logger.info("Starting cycle: block=%s window=%s-%s today=%s", current_block, from_block, current_block, today)

    # 1. Pool rates
    pools = _pools(store, cfg)
    refreshed = refresh_pool_rates(ledger, store, pools)
    lock_days = {p.id: p.lock_days for p in pools}

    # 2. Stakes in the window
    staked = fetch_events(ledger, STAKED, from_block, current_block)
    new_stake, stake_count = ingest_stakes(store, staked, lock_days, day_start, cfg.token_decimals, deadline)
    logger.info("Scanned %d Staked events, %d today (%s)", len(staked), stake_count, new_stake)

    # 3. Unstakes, oldest first
    unstakes = fetch_events(ledger, REWARD_PAID, from_block, current_block)
    closed, missed, unstake_count = reconcile_unstakes(
        store, unstakes, matcher, day_start, cfg.token_decimals, deadline
    )
    logger.info("Scanned %d RewardPaid events: %d closed, %d unmatched", len(unstakes), closed, missed)

    # 4. Aggregates from durable state
    deadline.check("aggregate recomputation")
    snapshot = compute_snapshot(store, today, now, day_start, new_stake)

    # 5. Commit
    deadline.check("snapshot commit")
    store.upsert_snapshot(snapshot)
    known = {p.id for p in pools}
    for pool_id in store.active_pool_ids():
        if pool_id not in known:
            # stakes naming an unconfigured pool still need a total row
            pools.append(PoolConfig(id=pool_id, lock_days=0))
            known.add(pool_id)
    for pool in pools:
        deadline.check("pool totals")
        total = store.active_total(pool.id)
        store.set_pool_total(pool.id, total)
        pool.total_staked = total

    summary = IngestSummary(
        today=today.isoformat(),
        new_stake=snapshot.new_stake,
        unstake=snapshot.new_unstake,
        active_stake=snapshot.active_stake,
        cumulative_stake=snapshot.cumulative_stake,
        total_users=snapshot.total_users,
        stake_count=stake_count,
        unstake_count=unstake_count,
        reconciled=closed,
        missed=missed,
        pools_refreshed=refreshed,
    )
    logger.info("Cycle completed: %s", summary.to_dict())
    return summary
