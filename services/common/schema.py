SCHEMA_SQL = '''
CREATE TABLE IF NOT EXISTS stake_pools (
  id integer PRIMARY KEY,
  lock_days integer NOT NULL DEFAULT 0,
  rate_per_sec numeric(78, 0) NOT NULL DEFAULT 0,
  total_staked numeric(38, 18) NOT NULL DEFAULT 0,
  apy numeric(12, 4) NOT NULL DEFAULT 0,
  min_stake numeric(38, 18) NOT NULL DEFAULT 0,
  max_stake numeric(38, 18) NOT NULL DEFAULT 0,
  updated_at timestamptz DEFAULT now()
);

CREATE TABLE IF NOT EXISTS stake_records (
  id bigserial PRIMARY KEY,
  user_address text NOT NULL,
  pool_id integer NOT NULL,
  amount numeric(38, 18) NOT NULL,
  stake_time bigint NOT NULL,
  unlock_time bigint NOT NULL,
  lock_days integer NOT NULL DEFAULT 0,
  tx_hash text NOT NULL UNIQUE,
  block_number bigint NOT NULL,
  status text NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'unstaked')),
  unstake_time bigint,
  close_event_id text UNIQUE,
  reward_amount numeric(38, 18),
  created_at timestamptz DEFAULT now()
);

CREATE INDEX IF NOT EXISTS stake_records_match_idx
  ON stake_records (user_address, pool_id, status, stake_time);

CREATE INDEX IF NOT EXISTS stake_records_unlock_idx
  ON stake_records (status, unlock_time);

CREATE TABLE IF NOT EXISTS daily_stake_snapshots (
  date date PRIMARY KEY,
  new_stake numeric(38, 18) NOT NULL DEFAULT 0,
  new_unstake numeric(38, 18) NOT NULL DEFAULT 0,
  active_stake numeric(38, 18) NOT NULL DEFAULT 0,
  cumulative_stake numeric(38, 18) NOT NULL DEFAULT 0,
  total_users integer NOT NULL DEFAULT 0,
  unlocked_next_1day numeric(38, 18) NOT NULL DEFAULT 0,
  unlocked_next_2days numeric(38, 18) NOT NULL DEFAULT 0,
  unlocked_next_7days numeric(38, 18) NOT NULL DEFAULT 0,
  unlocked_next_15days numeric(38, 18) NOT NULL DEFAULT 0,
  unlocked_next_30days numeric(38, 18) NOT NULL DEFAULT 0,
  updated_at timestamptz DEFAULT now()
);
'''
