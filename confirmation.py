"""Confirmation polling for submitted ledger operations.

A receipt is polled through a status lookup until the operation is observably
finalized. Absent results are retried with exponential backoff, a failed
on-chain status stops polling at once.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional

from errors import ConfirmationExhausted, LedgerUnavailable, TransactionRejected, TransferCancelled


class ConfirmationStatus(Enum):
    CONFIRMED = "confirmed"
    NOT_YET_VISIBLE = "not_yet_visible"
    REJECTED = "rejected"


@dataclass(frozen=True)
class ConfirmationResult:
    status: ConfirmationStatus
    detail: Any = None
    reason: Optional[str] = None

    @classmethod
    def confirmed(cls, detail: Any = None) -> "ConfirmationResult":
        return cls(ConfirmationStatus.CONFIRMED, detail=detail)

    @classmethod
    def not_yet_visible(cls) -> "ConfirmationResult":
        return cls(ConfirmationStatus.NOT_YET_VISIBLE)

    @classmethod
    def rejected(cls, reason: str) -> "ConfirmationResult":
        return cls(ConfirmationStatus.REJECTED, reason=reason)

    @property
    def is_confirmed(self) -> bool:
        return self.status is ConfirmationStatus.CONFIRMED

    @property
    def is_rejected(self) -> bool:
        return self.status is ConfirmationStatus.REJECTED


StatusLookup = Callable[[str], Awaitable[ConfirmationResult]]


def backoff_delays(base_interval: float, attempts: int, max_interval: Optional[float] = None) -> List[float]:
    """Pause before each attempt: base, 2*base, 4*base, ... optionally capped."""
    delays = []
    for k in range(attempts):
        delay = base_interval * (2 ** k)
        if max_interval is not None:
            delay = min(delay, max_interval)
        delays.append(delay)
    return delays


async def pause(delay: float, cancel: Optional[asyncio.Event] = None):
    """Sleep for delay seconds, raising TransferCancelled if cancel gets set."""
    if cancel is None:
        await asyncio.sleep(delay)
        return
    if cancel.is_set():
        raise TransferCancelled("Operation cancelled")
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return
    raise TransferCancelled("Operation cancelled")


async def wait_for_confirmation(
    receipt: str,
    lookup: StatusLookup,
    attempts: int,
    base_interval: float,
    max_interval: Optional[float] = None,
    cancel: Optional[asyncio.Event] = None,
) -> ConfirmationResult:
    """Poll lookup(receipt) until it confirms.

    Raises TransactionRejected on a failed status, ConfirmationExhausted after
    `attempts` lookups that never saw the transaction, TransferCancelled if the
    cancel event fires during a pause.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for number, delay in enumerate(backoff_delays(base_interval, attempts, max_interval), start=1):
        await pause(delay, cancel)

        try:
            result = await lookup(receipt)
        except LedgerUnavailable as e:
            logging.warning(f"Status lookup for {receipt} failed ({number}/{attempts}): {e}")
            continue

        if result.is_confirmed:
            logging.info(f"Transaction https://solscan.io/tx/{receipt} confirmed after {number} attempts")
            return result
        if result.is_rejected:
            logging.error(f"Transaction {receipt} rejected: {result.reason}")
            raise TransactionRejected(f"Transaction {receipt} failed: {result.reason}", receipt=receipt)

        logging.info(f"Transaction {receipt} not yet confirmed, retrying... ({number}/{attempts})")

    logging.error(f"Transaction {receipt} failed to confirm after {attempts} attempts")
    raise ConfirmationExhausted(f"Transaction {receipt} not confirmed after {attempts} attempts", receipt=receipt)
