"""Error taxonomy for one ingestion run.

RPC failures and reconciliation misses are skipped by the job; store write
failures and deadline overruns fail the run.
"""


class IngestError(Exception):
    pass


class RpcError(IngestError):
    def __init__(self, message: str, *, status_code: int | None = None, endpoint: str | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint


class RpcTimeout(RpcError):
    pass


class Unavailable(RpcError):
    """A ledger read (e.g. pool rate) could not be served."""


class ReconciliationMiss(IngestError):
    """No active stake was eligible to be closed by an unstake event."""


class StoreWriteFailure(IngestError):
    pass


class RunDeadlineExceeded(IngestError):
    pass
