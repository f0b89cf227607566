"""Confirmed-delivery transfers out of custodial wallets.

`transfer_tokens` sweeps the whole available balance of one asset to a
destination, then polls for confirmation and verifies the destination balance
before reporting success. Submissions are not idempotent on the network: if a
transaction lands after its confirmation window closed, the next attempt can
move funds a second time. Earlier receipts are re-checked before every
resubmission to narrow that window, but it is not closed.

The `ledger` argument is a SolanaLedger or an XrpLedger; both parse their own
credentials, addresses and assets.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, List, Optional

import confirmation
from config import (
    CONFIRMATION_ATTEMPTS,
    CONFIRMATION_MIN_TIMEOUT,
    HARD_RETRIES,
    SETTLE_DELAY,
)
from errors import (
    ConfirmationExhausted,
    InsufficientReserve,
    LedgerUnavailable,
    TransferInterrupted,
    TransferTimeout,
)
from ledger import FeeParams


@dataclass
class TransferConfig:
    max_attempts: int = HARD_RETRIES
    confirmation_attempts: int = CONFIRMATION_ATTEMPTS
    base_interval: float = CONFIRMATION_MIN_TIMEOUT
    max_interval: Optional[float] = None
    settle_delay: float = SETTLE_DELAY
    recheck_pending: bool = True
    fees: FeeParams = field(default_factory=FeeParams)


@dataclass(frozen=True)
class TransferIntent:
    wallet: Any
    owner: Any
    destination: Any
    asset: Any
    amount: int


@dataclass(frozen=True)
class TransferReceipt:
    signature: Optional[str]
    asset: str
    destination: str
    amount: int
    attempts: int
    idempotency_key: str
    noop: bool = False


async def resolve_intent(ledger, wallet, destination, asset, fees: FeeParams) -> TransferIntent:
    """Amount to move: the whole balance less whatever the chain makes the source keep."""
    owner = ledger.address_of(wallet)
    balance = await ledger.balance(owner, asset)
    if balance == 0:
        return TransferIntent(wallet, owner, destination, asset, 0)

    retained = await ledger.retained_minimum(owner, asset, fees)
    amount = balance - retained
    if amount <= 0:
        raise InsufficientReserve(
            f"Balance {balance} of {asset} does not cover the retained minimum of {retained}"
        )
    return TransferIntent(wallet, owner, destination, asset, amount)


async def _verify_delivery(ledger, intent: TransferIntent, before: int, config: TransferConfig, cancel) -> bool:
    if config.settle_delay > 0:
        await confirmation.pause(config.settle_delay, cancel)
    after = await ledger.balance(intent.destination, intent.asset)
    logging.info(f"Post-transfer balance for {intent.destination}: {after} (was {before})")
    return after - before >= intent.amount


async def _recheck_pending(ledger, pending: List[str], intent: TransferIntent, before: int, config: TransferConfig, cancel) -> Optional[str]:
    """Look up receipts whose confirmation window closed; return one that has since landed and verified.

    A LedgerUnavailable raised while verifying a landed receipt propagates
    with the receipt still pending.
    """
    for receipt in list(pending):
        try:
            result = await ledger.transaction_status(receipt)
        except LedgerUnavailable as e:
            logging.warning(f"Could not recheck pending transaction {receipt}: {e}")
            continue
        if result.is_rejected:
            pending.remove(receipt)
        elif result.is_confirmed:
            logging.info(f"Earlier transaction {receipt} landed late")
            delivered = await _verify_delivery(ledger, intent, before, config, cancel)
            pending.remove(receipt)
            if delivered:
                return receipt
            logging.warning(f"Late transaction {receipt} not reflected in destination balance")
    return None


async def transfer_tokens(
    ledger,
    source_credential: str,
    destination_address: str,
    asset: str,
    config: Optional[TransferConfig] = None,
    cancel: Optional[asyncio.Event] = None,
    idempotency_key: Optional[str] = None,
) -> TransferReceipt:
    """Move the full balance of `asset` from the source wallet to `destination_address`.

    Returns a no-op receipt when there is nothing to move. Raises
    SubmissionRejected or TransactionRejected without retrying,
    TransferInterrupted when balances cannot be read before the first
    submission, and TransferTimeout once `config.max_attempts` attempts failed
    to produce a verified delivery.
    """
    config = config or TransferConfig()
    key = idempotency_key or str(uuid.uuid4())

    wallet = ledger.load_wallet(source_credential)
    destination = ledger.parse_destination(destination_address)
    mint = ledger.parse_asset(asset)
    logging.info(f"[{key}] Transfer of {mint} from {ledger.address_of(wallet)} to {destination}")

    try:
        intent = await resolve_intent(ledger, wallet, destination, mint, config.fees)
        if intent.amount == 0:
            logging.info(f"[{key}] No tokens to transfer from {intent.owner} to {destination}")
            return TransferReceipt(None, str(mint), str(destination), 0, 0, key, noop=True)
        before = await ledger.balance(destination, mint)
    except LedgerUnavailable as e:
        raise TransferInterrupted(f"Could not read balances before transferring {mint}: {e}") from e

    pending: List[str] = []

    for attempt in range(1, config.max_attempts + 1):
        if attempt > 1 and config.recheck_pending and pending:
            try:
                landed = await _recheck_pending(ledger, pending, intent, before, config, cancel)
            except LedgerUnavailable as e:
                logging.warning(f"[{key}] Attempt #{attempt} could not verify a late transaction: {e}")
                continue
            if landed:
                return TransferReceipt(landed, str(mint), str(destination), intent.amount, attempt - 1, key)

        logging.info(f"[{key}] Attempting to send transfer of {intent.amount} units... Attempt #{attempt}")
        try:
            tx = await ledger.build_transfer(wallet, destination, mint, intent.amount, config.fees)
            signature = await ledger.submit(tx)
        except LedgerUnavailable as e:
            logging.warning(f"[{key}] Attempt #{attempt} could not reach the ledger: {e}")
            continue

        logging.info(f"[{key}] Transfer submitted with txid: {signature}")
        try:
            await confirmation.wait_for_confirmation(
                signature,
                ledger.transaction_status,
                attempts=config.confirmation_attempts,
                base_interval=config.base_interval,
                max_interval=config.max_interval,
                cancel=cancel,
            )
        except ConfirmationExhausted:
            pending.append(signature)
            continue

        try:
            delivered = await _verify_delivery(ledger, intent, before, config, cancel)
        except LedgerUnavailable as e:
            logging.warning(f"[{key}] Could not verify delivery of {signature}: {e}")
            delivered = False
        if delivered:
            logging.info(f"[{key}] Transaction ID: {signature}")
            return TransferReceipt(signature, str(mint), str(destination), intent.amount, attempt, key)

        logging.error(f"[{key}] Transfer to {destination} not reflected in balance. Retrying...")

    raise TransferTimeout(f"Failed to transfer tokens after {config.max_attempts} attempts.")


async def withdraw_native(
    ledger,
    source_credential: str,
    destination_address: str,
    amount: int,
    config: Optional[TransferConfig] = None,
    cancel: Optional[asyncio.Event] = None,
) -> TransferReceipt:
    """Send a fixed amount of the native asset, keeping the source above its reserve. Submits once."""
    config = config or TransferConfig()
    key = str(uuid.uuid4())

    wallet = ledger.load_wallet(source_credential)
    destination = ledger.parse_destination(destination_address)
    if amount <= 0:
        raise ValueError("Withdrawal amount must be positive")
    native = ledger.native_asset
    owner = ledger.address_of(wallet)

    try:
        balance = await ledger.balance(owner, native)
        retained = await ledger.retained_minimum(owner, native, config.fees)
        if balance - amount < retained:
            raise InsufficientReserve("Insufficient balance to maintain the account reserve")
        tx = await ledger.build_transfer(wallet, destination, native, amount, config.fees)
        signature = await ledger.submit(tx)
    except LedgerUnavailable as e:
        raise TransferInterrupted(f"Withdrawal from {owner} could not reach the ledger: {e}") from e

    await confirmation.wait_for_confirmation(
        signature,
        ledger.transaction_status,
        attempts=config.confirmation_attempts,
        base_interval=config.base_interval,
        max_interval=config.max_interval,
        cancel=cancel,
    )
    logging.info(f"Withdrawn {amount} base units of {ledger.native_symbol} from {owner} to {destination}")
    return TransferReceipt(signature, str(native), str(destination), amount, 1, key)
