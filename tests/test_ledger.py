"""Tests for the Solana ledger adapter against a stubbed RPC client."""

import asyncio
from types import SimpleNamespace

import base58
import pytest
from solana.rpc.core import RPCException
from solders.hash import Hash
from solders.keypair import Keypair

from errors import InvalidAsset, InvalidCredential, InvalidDestination, LedgerUnavailable, SubmissionRejected
from ledger import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    NATIVE_MINT,
    TOKEN_PROGRAM_ID,
    FeeParams,
    SolanaLedger,
    get_associated_token_address,
    is_valid_wallet_address,
    token_transfer_instruction,
)


def response(value):
    return SimpleNamespace(value=value)


class StubClient:
    """Async stand-in for solana.rpc.async_api.AsyncClient."""

    def __init__(self, accounts=None, lamports=0, rent=890880, transaction=None, send_error=None):
        self.accounts = accounts or {}
        self.lamports = lamports
        self.rent = rent
        self.transaction = transaction
        self.send_error = send_error
        self.sent = []

    async def get_balance(self, owner, commitment=None):
        return response(self.lamports)

    async def get_account_info(self, pubkey, commitment=None):
        data = self.accounts.get(pubkey)
        return response(SimpleNamespace(data=data) if data is not None else None)

    async def get_minimum_balance_for_rent_exemption(self, size):
        return response(self.rent)

    async def get_latest_blockhash(self):
        return response(SimpleNamespace(blockhash=Hash.default()))

    async def send_raw_transaction(self, raw, opts=None):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(raw)
        return response("5sig")

    async def get_transaction(self, signature, commitment=None, max_supported_transaction_version=None):
        return response(self.transaction)

    async def close(self):
        pass


def token_account_data(amount: int) -> bytes:
    return bytes(64) + amount.to_bytes(8, "little") + bytes(93)


def run(coro):
    return asyncio.run(coro)


def test_fee_params_priority_fee_rounds_up():
    assert FeeParams().priority_fee_lamports() == 54000
    assert FeeParams(priority_fee_micro_lamports=1, compute_unit_limit=1).priority_fee_lamports() == 1


def test_token_transfer_instruction_layout():
    source, dest, owner = Keypair().pubkey(), Keypair().pubkey(), Keypair().pubkey()
    ix = token_transfer_instruction(source, dest, owner, 1_000)

    assert ix.program_id == TOKEN_PROGRAM_ID
    assert ix.data == bytes([3]) + (1_000).to_bytes(8, "little")
    assert [meta.pubkey for meta in ix.accounts] == [source, dest, owner]
    assert ix.accounts[2].is_signer


def test_wallet_address_validation():
    owner = Keypair().pubkey()
    assert is_valid_wallet_address(str(owner))
    # program-derived addresses are off curve and cannot be wallets
    assert not is_valid_wallet_address(str(get_associated_token_address(owner, NATIVE_MINT)))
    assert not is_valid_wallet_address("not an address")


def test_native_balance_uses_lamports():
    ledger = SolanaLedger("http://localhost:8899", client=StubClient(lamports=42))
    assert run(ledger.balance(Keypair().pubkey(), NATIVE_MINT)) == 42


def test_token_balance_reads_associated_account():
    owner, mint = Keypair().pubkey(), Keypair().pubkey()
    ata = get_associated_token_address(owner, mint)
    ledger = SolanaLedger("http://localhost:8899", client=StubClient(accounts={ata: token_account_data(1234)}))

    assert run(ledger.balance(owner, mint)) == 1234
    assert run(ledger.balance(Keypair().pubkey(), mint)) == 0


def test_retained_minimum():
    ledger = SolanaLedger("http://localhost:8899", client=StubClient(rent=890880))
    fees = FeeParams()

    owner = Keypair().pubkey()

    assert run(ledger.retained_minimum(owner, Keypair().pubkey(), fees)) == 0
    assert run(ledger.retained_minimum(owner, NATIVE_MINT, fees)) == 890880 + 5000 + 54000

    relayed = SolanaLedger("http://localhost:8899", jito_url="http://relay", client=StubClient(rent=890880))
    assert run(relayed.retained_minimum(owner, NATIVE_MINT, fees)) == 890880 + 5000 + 54000 + 50000


def test_build_native_transfer():
    wallet = Keypair()
    ledger = SolanaLedger("http://localhost:8899", client=StubClient())

    tx = run(ledger.build_transfer(wallet, Keypair().pubkey(), NATIVE_MINT, 1000, FeeParams()))

    # compute limit, compute price, transfer
    assert len(tx.message.instructions) == 3
    assert tx.message.account_keys[0] == wallet.pubkey()


def test_build_token_transfer_creates_missing_receiver_account():
    wallet, destination, mint = Keypair(), Keypair().pubkey(), Keypair().pubkey()
    ledger = SolanaLedger("http://localhost:8899", jito_url="http://relay", client=StubClient())

    tx = run(ledger.build_transfer(wallet, destination, mint, 5, FeeParams()))

    # compute limit, compute price, create account, token transfer, relay tip
    assert len(tx.message.instructions) == 5
    program_ids = {tx.message.account_keys[ix.program_id_index] for ix in tx.message.instructions}
    assert ASSOCIATED_TOKEN_PROGRAM_ID in program_ids
    assert TOKEN_PROGRAM_ID in program_ids


def test_submit_maps_preflight_failure_to_rejection():
    ledger = SolanaLedger("http://localhost:8899", client=StubClient(send_error=RPCException("preflight failed")))
    tx = run(ledger.build_transfer(Keypair(), Keypair().pubkey(), NATIVE_MINT, 1, FeeParams()))

    with pytest.raises(SubmissionRejected):
        run(ledger.submit(tx))


def test_submit_maps_transport_failure_to_unavailable():
    ledger = SolanaLedger("http://localhost:8899", client=StubClient(send_error=OSError("connection refused")))
    tx = run(ledger.build_transfer(Keypair(), Keypair().pubkey(), NATIVE_MINT, 1, FeeParams()))

    with pytest.raises(LedgerUnavailable):
        run(ledger.submit(tx))


class TestTransactionStatus:
    signature = str(Keypair().sign_message(b"receipt"))

    def status(self, transaction):
        ledger = SolanaLedger("http://localhost:8899", client=StubClient(transaction=transaction))
        return run(ledger.transaction_status(self.signature))

    def test_absent_is_not_yet_visible(self):
        result = self.status(None)
        assert not result.is_confirmed and not result.is_rejected

    def test_success(self):
        tx = SimpleNamespace(slot=99, transaction=SimpleNamespace(meta=SimpleNamespace(err=None, fee=5000)))
        result = self.status(tx)
        assert result.is_confirmed
        assert result.detail == {"slot": 99, "fee": 5000}

    def test_failure(self):
        tx = SimpleNamespace(slot=99, transaction=SimpleNamespace(meta=SimpleNamespace(err="InsufficientFunds", fee=5000)))
        result = self.status(tx)
        assert result.is_rejected
        assert result.reason == "InsufficientFunds"


def test_ledger_parses_its_own_inputs():
    ledger = SolanaLedger("http://localhost:8899", client=StubClient())
    wallet = Keypair()
    secret = base58.b58encode(bytes(wallet)).decode()

    assert ledger.address_of(ledger.load_wallet(secret)) == wallet.pubkey()
    assert ledger.parse_asset("sol") == NATIVE_MINT
    assert ledger.parse_destination(f" {wallet.pubkey()} ") == wallet.pubkey()
    with pytest.raises(InvalidCredential):
        ledger.load_wallet("not-a-key")
    with pytest.raises(InvalidDestination):
        ledger.parse_destination("nowhere")
    with pytest.raises(InvalidAsset):
        ledger.parse_asset("XRP")
