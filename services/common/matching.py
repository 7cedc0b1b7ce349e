"""Which active stake does an unstake event close?

The ledger's ``RewardPaid`` event names the user and pool but not the stake
position it settles, so the job has to infer it. ``FifoMatcher`` closes the
earliest-staked eligible position. A scheme that can read an exact closing
reference from the ledger only has to implement ``MatchingStrategy``.
"""

from typing import Protocol, Sequence

from services.common.adapters.ledger import LedgerEvent
from services.common.models import ACTIVE, StakeRecord


class MatchingStrategy(Protocol):
    def rank(self, event: LedgerEvent, candidates: Sequence[StakeRecord]) -> list[StakeRecord]:
        """Eligible candidates in the order they should be tried."""
        ...


class FifoMatcher:

    def rank(self, event: LedgerEvent, candidates: Sequence[StakeRecord]) -> list[StakeRecord]:
        ts = event.timestamp or 0
        eligible = [
            c for c in candidates
            if c.status == ACTIVE and c.unlock_time <= ts
        ]
        return sorted(eligible, key=lambda c: (c.stake_time, c.block_number, c.tx_hash))
