"""Shared fixtures: an in-memory ledger and recorded backoff pauses."""

from typing import Dict, List, Optional, Set, Tuple

import base58
import pytest
from solders.keypair import Keypair

import confirmation
from config import SOL_MINT
from confirmation import ConfirmationResult
from errors import LedgerUnavailable
from ledger import NATIVE_MINT, load_keypair, parse_address, parse_asset


class FakeLedger:
    """Stands in for SolanaLedger. Confirmed transfers credit the destination unless deliver=False.

    `failing_balance_calls` lists 1-based balance() calls that raise LedgerUnavailable.
    """

    native_symbol = "SOL"
    native_asset = NATIVE_MINT
    native_decimals = 9

    def __init__(
        self,
        balances: Optional[Dict[Tuple[str, str], int]] = None,
        retained: int = 0,
        statuses: Optional[List[ConfirmationResult]] = None,
        default_status: Optional[ConfirmationResult] = None,
        deliver: bool = True,
        unavailable_submits: int = 0,
        submit_error: Optional[Exception] = None,
        failing_balance_calls: Optional[Set[int]] = None,
    ):
        self.balances = dict(balances or {})
        self.retained = retained
        self.statuses = list(statuses or [])
        self.default_status = default_status or ConfirmationResult.confirmed({"slot": 1})
        self.deliver = deliver
        self.unavailable_submits = unavailable_submits
        self.submit_error = submit_error
        self.failing_balance_calls = set(failing_balance_calls or ())
        self.submitted: List[dict] = []
        self.lookups: List[str] = []
        self.balance_calls = 0
        self._txs: Dict[str, dict] = {}
        self._credited = set()

    def load_wallet(self, secret):
        return load_keypair(secret)

    def parse_destination(self, address):
        return parse_address(address)

    def parse_asset(self, asset):
        return parse_asset(asset)

    def address_of(self, wallet):
        return wallet.pubkey()

    async def balance(self, owner, asset) -> int:
        self.balance_calls += 1
        if self.balance_calls in self.failing_balance_calls:
            raise LedgerUnavailable("read timed out")
        return self.balances.get((str(owner), str(asset)), 0)

    async def retained_minimum(self, owner, asset, fees) -> int:
        return self.retained if str(asset) == SOL_MINT else 0

    async def build_transfer(self, wallet, destination, asset, amount, fees) -> dict:
        return {"source": str(wallet.pubkey()), "destination": str(destination), "asset": str(asset), "amount": amount}

    async def submit(self, tx: dict) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        if self.unavailable_submits > 0:
            self.unavailable_submits -= 1
            raise LedgerUnavailable("connection reset")
        self.submitted.append(tx)
        signature = f"sig{len(self.submitted)}"
        self._txs[signature] = tx
        return signature

    async def transaction_status(self, receipt: str) -> ConfirmationResult:
        self.lookups.append(receipt)
        result = self.statuses.pop(0) if self.statuses else self.default_status
        if result.is_confirmed and self.deliver and receipt not in self._credited:
            tx = self._txs[receipt]
            key = (tx["destination"], tx["asset"])
            self.balances[key] = self.balances.get(key, 0) + tx["amount"]
            self._credited.add(receipt)
        return result


@pytest.fixture
def source() -> Keypair:
    return Keypair()


@pytest.fixture
def source_secret(source) -> str:
    return base58.b58encode(bytes(source)).decode()


@pytest.fixture
def destination() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def token_mint() -> str:
    return str(Keypair().pubkey())


@pytest.fixture
def recorded_pauses(monkeypatch) -> List[float]:
    """Replace backoff sleeps with a recorder so tests run instantly."""
    delays = []

    async def fake_pause(delay, cancel=None):
        delays.append(delay)

    monkeypatch.setattr(confirmation, "pause", fake_pause)
    return delays
