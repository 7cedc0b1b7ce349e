import logging
import secrets
from typing import Callable

from fastapi import Depends, FastAPI, Header, Query
from fastapi.responses import JSONResponse

from services.common.adapters.ledger import LedgerClient, build_ledger_client
from services.common.config import Config, load_config
from services.common.errors import IngestError
from services.common.ingest import run_ingest_cycle
from services.common.models import UNLOCK_HORIZONS
from services.common.store import PostgresStore

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)-8s] %(levelname)-5s %(message)s",
)
logger = logging.getLogger("api")

app = FastAPI(title="Stake Analytics API", version="0.1.0")

UNLOCK_KEYS = {
    1: "unlockedNext1Day",
    2: "unlockedNext2Days",
    7: "unlockedNext7Days",
    15: "unlockedNext15Days",
    30: "unlockedNext30Days",
}


def get_config() -> Config:
    return load_config()


def get_store() -> PostgresStore:
    return PostgresStore()


def get_ledger_factory() -> Callable[[Config], LedgerClient]:
    return build_ledger_client


def _authorized(authorization: str | None, secret: str) -> bool:
    if not secret or not authorization:
        return False
    return secrets.compare_digest(authorization, f"Bearer {secret}")


def _num(value) -> float:
    return float(value) if value is not None else 0.0


def _snapshot_out(row: dict) -> dict:
    out = {
        "date": str(row["date"]),
        "newStake": _num(row.get("new_stake")),
        "newUnstake": _num(row.get("new_unstake")),
        "activeStake": _num(row.get("active_stake")),
        "cumulativeStake": _num(row.get("cumulative_stake")),
        "totalUsers": int(row.get("total_users") or 0),
    }
    for days, col in UNLOCK_HORIZONS.items():
        out[UNLOCK_KEYS[days]] = _num(row.get(col))
    return out


def _pool_out(row: dict) -> dict:
    return {
        "id": int(row["id"]),
        "lockDays": int(row["lock_days"]),
        "apy": f"{_num(row.get('apy')):.2f}%",
        "totalStaked": _num(row.get("total_staked")),
        "ratePerSec": str(row.get("rate_per_sec") or 0),
    }


def _latest_out(row: dict | None) -> dict:
    if row is None:
        out = {"cumulativeStake": 0.0, "activeStake": 0.0, "totalUsers": 0}
        out.update({key: 0.0 for key in UNLOCK_KEYS.values()})
        return out
    snap = _snapshot_out(row)
    return {k: v for k, v in snap.items() if k not in ("date", "newStake", "newUnstake")}


@app.get("/health")
def health():
    return {"ok": True}


def _run_cycle(authorization, cfg, store, ledger_factory):
    if not _authorized(authorization, cfg.cron_secret):
        logger.warning("Rejected unauthorized ingest trigger")
        return JSONResponse({"error": "Unauthorized"}, status_code=401)
    try:
        summary = run_ingest_cycle(ledger=ledger_factory(cfg), store=store, cfg=cfg)
    except IngestError as exc:
        logger.error("Ingest cycle failed: %s", exc)
        return JSONResponse({"error": "Internal Server Error", "details": str(exc)}, status_code=500)
    except Exception as exc:
        logger.exception("Ingest cycle crashed")
        return JSONResponse({"error": "Internal Server Error", "details": str(exc)}, status_code=500)
    return {"success": True, "data": summary.to_dict()}


@app.get("/api/cron/fetch-stake-data")
def cron_fetch_stake_data(
    authorization: str | None = Header(None),
    cfg: Config = Depends(get_config),
    store: PostgresStore = Depends(get_store),
    ledger_factory=Depends(get_ledger_factory),
):
    """Scheduler trigger: run one ingestion cycle and return its summary."""
    return _run_cycle(authorization, cfg, store, ledger_factory)


@app.post("/api/cron/fetch-stake-data")
def manual_fetch_stake_data(
    authorization: str | None = Header(None),
    cfg: Config = Depends(get_config),
    store: PostgresStore = Depends(get_store),
    ledger_factory=Depends(get_ledger_factory),
):
    """Same as the GET trigger; used by the dashboard's refresh button."""
    return _run_cycle(authorization, cfg, store, ledger_factory)


@app.get("/api/stats/snapshots")
def snapshots(days: int = Query(30, ge=1, le=3650), store: PostgresStore = Depends(get_store)):
    return {"snapshots": [_snapshot_out(r) for r in store.daily_snapshots(days)]}


@app.get("/api/stats/pools")
def pools(store: PostgresStore = Depends(get_store)):
    return {"pools": [_pool_out(r) for r in store.pools()]}


@app.get("/api/stats/latest")
def latest(store: PostgresStore = Depends(get_store)):
    return _latest_out(store.latest_snapshot())


@app.get("/api/stats/chart")
def chart(days: int = Query(30, ge=1, le=3650), store: PostgresStore = Depends(get_store)):
    series = [_snapshot_out(r) for r in store.daily_snapshots(days)]
    latest_stats = _latest_out(store.latest_snapshot())
    payload = {
        "labels": [s["date"] for s in series],
        "newStake": [s["newStake"] for s in series],
        "newUnstake": [s["newUnstake"] for s in series],
        "activeStake": [s["activeStake"] for s in series],
        "cumulativeStake": latest_stats["cumulativeStake"],
        "latestActiveStake": latest_stats["activeStake"],
        "totalUsers": latest_stats["totalUsers"],
        "dataPoints": len(series),
        "pools": [_pool_out(r) for r in store.pools()],
        "details": [
            {k: s[k] for k in ("date", "newStake", "newUnstake", "activeStake")}
            for s in reversed(series[-10:])
        ],
    }
    payload.update({key: latest_stats[key] for key in UNLOCK_KEYS.values()})
    return payload
