import psycopg2, pandas as pd
from psycopg2.extras import execute_values
from services.common.config import load_config

_cfg = load_config()

def _conn():
    if _cfg.database_url:
        return psycopg2.connect(_cfg.database_url)
    return psycopg2.connect(
        host=_cfg.pg_host, port=_cfg.pg_port, dbname=_cfg.pg_db,
        user=_cfg.pg_user, password=_cfg.pg_pass
    )

def execute(sql, params=None) -> int:
    """Run one statement in its own transaction; returns the affected row count."""
    conn = _conn()
    try:
        with conn, conn.cursor() as cur:
            cur.execute(sql, params or {})
            return cur.rowcount
    finally:
        conn.close()

def fetch_df(sql, params=None) -> pd.DataFrame:
    conn = _conn()
    try:
        return pd.read_sql(sql, conn, params=params)
    finally:
        conn.close()

def fetch_one(sql, params=None):
    conn = _conn()
    try:
        with conn, conn.cursor() as cur:
            cur.execute(sql, params or {})
            return cur.fetchone()
    finally:
        conn.close()

def upsert_many(table: str, rows: list[dict], conflict_cols: list[str], update_cols: list[str]) -> int:
    if not rows:
        return 0
    cols = list(rows[0].keys())
    vals = [[r[c] for c in cols] for r in rows]
    on_conflict = ", ".join(conflict_cols)
    if update_cols:
        updates = ", ".join([f"{c}=EXCLUDED.{c}" for c in update_cols])
        conflict_clause = f"ON CONFLICT ({on_conflict}) DO UPDATE SET {updates}"
    else:
        conflict_clause = f"ON CONFLICT ({on_conflict}) DO NOTHING"
    sql = f"""
    INSERT INTO {table} ({",".join(cols)})
    VALUES %s
    {conflict_clause}
    """
    conn = _conn()
    try:
        with conn, conn.cursor() as cur:
            execute_values(cur, sql, vals)
            return cur.rowcount
    finally:
        conn.close()

def ensure_schema():
    from services.common.schema import SCHEMA_SQL
    execute(SCHEMA_SQL)
