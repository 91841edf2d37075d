"""Error taxonomy for the accumulation core.

Soft rejections (below minimum size, cap reached, insufficient funds) are not
errors and never raise. Everything here aborts the operation that raised it.
"""


class AccumulatorError(Exception):
    """Base class for all accumulator errors."""


class ConflictError(AccumulatorError):
    """A state-machine transition that is not allowed from the current status."""


class JobNotFoundError(AccumulatorError):
    pass


class ConfigError(AccumulatorError):
    pass


class PortError(AccumulatorError):
    """An external collaborator (price, balance, execution) failed."""


class PriceUnavailable(PortError):
    pass


class BalanceQueryFailed(PortError):
    pass


class ExecutionFailed(PortError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PersistenceError(AccumulatorError):
    """A ledger transaction could not commit; nothing was written."""


class TickError(AccumulatorError):
    """A tick aborted; the underlying error is chained as __cause__."""

    def __init__(self, job_id: str, message: str):
        super().__init__(message)
        self.job_id = job_id
