from typing import Optional


class TransferError(Exception):
    """Base class for failures surfaced by the transfer operation."""

    def __init__(self, message: str, receipt: Optional[str] = None):
        super().__init__(message)
        self.receipt = receipt


class InvalidCredential(TransferError):
    pass


class InvalidDestination(TransferError):
    pass


class InvalidAsset(TransferError):
    pass


class InsufficientReserve(TransferError):
    """Transfer would leave the source below the protocol-mandated minimum."""


class SubmissionRejected(TransferError):
    """The broadcast endpoint refused the transaction outright. Not retried."""


class TransactionRejected(TransferError):
    """The transaction landed but failed on-chain. Not retried."""


class ConfirmationExhausted(TransferError):
    """Polling budget ran out while the transaction was still not visible."""


class TransferTimeout(TransferError):
    """Outer submission budget ran out without a verified confirmation."""


class TransferCancelled(TransferError):
    pass


class TransferInterrupted(TransferError):
    """The ledger could not be reached at a step that is not retried."""


class LedgerUnavailable(Exception):
    """Transport-level RPC failure. Callers treat it as retryable."""


class TradeFailed(Exception):
    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status
