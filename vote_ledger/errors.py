class LedgerServiceError(Exception):
    pass


class InvalidVoteError(LedgerServiceError):
    pass


class VoteRejectedError(LedgerServiceError):
    def __init__(self, reason, message=None):
        self.reason = reason
        super().__init__(message or f"Vote rejected: {reason.value}")


class InvalidStateTransitionError(LedgerServiceError):
    pass


class InvalidAddressError(LedgerServiceError):
    pass


class ConcurrentWriteError(LedgerServiceError):
    """A concurrent writer won a uniqueness race; the unit of work may be retried."""


class SettlementError(LedgerServiceError):
    pass


class SettlementTransferFailed(SettlementError):
    """The transfer was not accepted by the settlement layer. Safe to retry."""


class SettlementAckLost(SettlementError):
    """The transfer may have landed but no acknowledgement reached us."""
