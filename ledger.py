import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import aiohttp
import base58
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts, TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from config import (
    COMPUTE_UNIT_LIMIT,
    DEFAULT_JITO_TIP_ACCOUNT,
    JITO_TIP_LAMPORTS,
    PRIORITY_FEE_MICRO_LAMPORTS,
    SOL_MINT,
)
from confirmation import ConfirmationResult
from errors import InvalidAsset, InvalidCredential, InvalidDestination, LedgerUnavailable, SubmissionRejected

# Program IDs
TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
NATIVE_MINT = Pubkey.from_string(SOL_MINT)

LAMPORTS_PER_SOL = 1_000_000_000
BASE_SIGNATURE_FEE = 5000

# SPL token program instruction tag
TOKEN_TRANSFER_IX = 3
# Associated token program CreateIdempotent tag
ATA_CREATE_IDEMPOTENT_IX = 1

TRANSPORT_ERRORS = (SolanaRpcException, aiohttp.ClientError, asyncio.TimeoutError, OSError)


@dataclass(frozen=True)
class FeeParams:
    priority_fee_micro_lamports: int = PRIORITY_FEE_MICRO_LAMPORTS
    jito_tip_lamports: int = JITO_TIP_LAMPORTS
    compute_unit_limit: int = COMPUTE_UNIT_LIMIT

    def priority_fee_lamports(self) -> int:
        # micro-lamports per compute unit, rounded up to whole lamports
        return -(-self.priority_fee_micro_lamports * self.compute_unit_limit // 1_000_000)


def get_associated_token_address(owner: Pubkey, mint: Pubkey) -> Pubkey:
    """Derive the associated token account address for a given wallet address and token mint."""
    seeds = [
        bytes(owner),
        bytes(TOKEN_PROGRAM_ID),
        bytes(mint)
    ]
    addr, _ = Pubkey.find_program_address(seeds, ASSOCIATED_TOKEN_PROGRAM_ID)
    return addr


def create_associated_token_account(payer: Pubkey, owner: Pubkey, mint: Pubkey) -> Instruction:
    """Instruction creating owner's token account for mint, a no-op if it already exists."""
    account = get_associated_token_address(owner, mint)
    keys = [
        AccountMeta(pubkey=payer, is_signer=True, is_writable=True),
        AccountMeta(pubkey=account, is_signer=False, is_writable=True),
        AccountMeta(pubkey=owner, is_signer=False, is_writable=False),
        AccountMeta(pubkey=mint, is_signer=False, is_writable=False),
        AccountMeta(pubkey=SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(pubkey=TOKEN_PROGRAM_ID, is_signer=False, is_writable=False),
    ]
    return Instruction(program_id=ASSOCIATED_TOKEN_PROGRAM_ID, accounts=keys, data=bytes([ATA_CREATE_IDEMPOTENT_IX]))


def token_transfer_instruction(source: Pubkey, destination: Pubkey, owner: Pubkey, amount: int) -> Instruction:
    """SPL token Transfer of raw `amount` units between two token accounts."""
    return Instruction(
        program_id=TOKEN_PROGRAM_ID,
        accounts=[
            AccountMeta(pubkey=source, is_signer=False, is_writable=True),
            AccountMeta(pubkey=destination, is_signer=False, is_writable=True),
            AccountMeta(pubkey=owner, is_signer=True, is_writable=False),
        ],
        data=bytes([TOKEN_TRANSFER_IX]) + amount.to_bytes(8, "little")
    )


def is_valid_wallet_address(address: str) -> bool:
    """True for a base58 public key that lies on the ed25519 curve."""
    try:
        return Pubkey.from_string(address.strip()).is_on_curve()
    except (ValueError, TypeError):
        return False


def load_keypair(secret: str) -> Keypair:
    try:
        return Keypair.from_bytes(base58.b58decode(secret.strip()))
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidCredential(f"Invalid wallet private key: {e}") from e


def parse_address(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address.strip())
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidDestination(f"Invalid destination wallet public key: {address}") from e


def parse_asset(asset: str) -> Pubkey:
    try:
        return Pubkey.from_string(asset.strip())
    except (ValueError, TypeError, AttributeError) as e:
        raise InvalidAsset(f"Invalid asset identifier: {asset}") from e


class SolanaLedger:
    """Balance queries, transaction building and broadcast against a Solana RPC node.

    When `jito_url` is set, signed transactions go to the Jito relay's
    sendTransaction endpoint and carry a tip; otherwise they are sent to the
    RPC node with preflight checks.
    """

    chain = "solana"
    native_symbol = "SOL"
    native_asset = NATIVE_MINT
    native_decimals = 9

    def __init__(
        self,
        rpc_url: str,
        jito_url: Optional[str] = None,
        tip_account: str = DEFAULT_JITO_TIP_ACCOUNT,
        commitment: Commitment = Confirmed,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.jito_url = jito_url
        self.tip_account = Pubkey.from_string(tip_account)
        self.commitment = commitment
        self.client = client or AsyncClient(rpc_url, commitment=commitment)
        self._http_session: Optional[aiohttp.ClientSession] = None

    async def _http(self) -> aiohttp.ClientSession:
        if self._http_session is None or self._http_session.closed:
            self._http_session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10))
        return self._http_session

    async def close(self):
        if self._http_session and not self._http_session.closed:
            await self._http_session.close()
        await self.client.close()

    def load_wallet(self, secret: str) -> Keypair:
        return load_keypair(secret)

    def parse_destination(self, address: str) -> Pubkey:
        return parse_address(address)

    def parse_asset(self, asset: str) -> Pubkey:
        if isinstance(asset, str) and asset.strip().upper() == self.native_symbol:
            return NATIVE_MINT
        return parse_asset(asset)

    def address_of(self, wallet: Keypair) -> Pubkey:
        return wallet.pubkey()

    async def _account_data(self, pubkey: Pubkey) -> Optional[bytes]:
        try:
            info = await self.client.get_account_info(pubkey, commitment=self.commitment)
        except (RPCException,) + TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"get_account_info({pubkey}) failed: {e}") from e
        if info.value is None:
            return None
        return bytes(info.value.data)

    async def balance(self, owner: Pubkey, asset: Pubkey) -> int:
        """Raw balance: lamports for the native mint, token units otherwise."""
        if asset == NATIVE_MINT:
            try:
                response = await self.client.get_balance(owner, commitment=self.commitment)
            except (RPCException,) + TRANSPORT_ERRORS as e:
                raise LedgerUnavailable(f"get_balance({owner}) failed: {e}") from e
            return response.value

        data = await self._account_data(get_associated_token_address(owner, asset))
        if data is None or len(data) < 72:
            return 0
        # Token account amount is at offset 64
        return int.from_bytes(data[64:72], "little")

    async def token_decimals(self, mint: Pubkey) -> int:
        if mint == NATIVE_MINT:
            return 9
        data = await self._account_data(mint)
        if data is None or len(data) < 45:
            logging.warning(f"Could not read decimals for {mint}, using default: 9")
            return 9
        return data[44]

    def fee_overhead(self, fees: FeeParams) -> int:
        """Lamports the source pays on top of the transferred amount."""
        overhead = BASE_SIGNATURE_FEE + fees.priority_fee_lamports()
        if self.jito_url:
            overhead += fees.jito_tip_lamports
        return overhead

    async def retained_minimum(self, owner: Pubkey, asset: Pubkey, fees: FeeParams) -> int:
        """Amount of `asset` the source must keep: rent exemption plus fees for SOL, nothing for tokens."""
        if asset != NATIVE_MINT:
            return 0
        try:
            response = await self.client.get_minimum_balance_for_rent_exemption(0)
        except (RPCException,) + TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"Failed to fetch minimum rent exemption balance: {e}") from e
        return response.value + self.fee_overhead(fees)

    async def build_transfer(
        self,
        wallet: Keypair,
        destination: Pubkey,
        asset: Pubkey,
        amount: int,
        fees: FeeParams,
    ) -> Transaction:
        """Signed transaction moving `amount` raw units of `asset` to `destination`."""
        owner = wallet.pubkey()
        instructions: List[Instruction] = [
            set_compute_unit_limit(fees.compute_unit_limit),
            set_compute_unit_price(fees.priority_fee_micro_lamports),
        ]

        if asset == NATIVE_MINT:
            instructions.append(transfer(TransferParams(from_pubkey=owner, to_pubkey=destination, lamports=amount)))
        else:
            source_ata = get_associated_token_address(owner, asset)
            receiver_ata = get_associated_token_address(destination, asset)
            if await self._account_data(receiver_ata) is None:
                logging.info(f"Receiver token account {receiver_ata} missing, creating it")
                instructions.append(create_associated_token_account(owner, destination, asset))
            instructions.append(token_transfer_instruction(source_ata, receiver_ata, owner, amount))

        if self.jito_url and fees.jito_tip_lamports > 0:
            instructions.append(transfer(TransferParams(
                from_pubkey=owner,
                to_pubkey=self.tip_account,
                lamports=fees.jito_tip_lamports
            )))

        try:
            blockhash = (await self.client.get_latest_blockhash()).value.blockhash
        except (RPCException,) + TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"get_latest_blockhash failed: {e}") from e

        message = Message.new_with_blockhash(instructions, owner, blockhash)
        tx = Transaction.new_unsigned(message)
        tx.sign([wallet], blockhash)
        return tx

    async def submit(self, tx: Transaction) -> str:
        """Broadcast a signed transaction and return its signature."""
        if self.jito_url:
            return await self._submit_jito(tx)

        try:
            response = await self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment, max_retries=3)
            )
        except RPCException as e:
            raise SubmissionRejected(f"Transaction rejected by RPC node: {e}") from e
        except TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"send_raw_transaction failed: {e}") from e
        return str(response.value)

    async def _submit_jito(self, tx: Transaction) -> str:
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendTransaction",
            "params": [base58.b58encode(bytes(tx)).decode()]
        }
        session = await self._http()
        try:
            async with session.post(self.jito_url, json=payload, headers={"Content-Type": "application/json"}) as resp:
                if resp.status >= 500:
                    raise LedgerUnavailable(f"Jito relay returned HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise LedgerUnavailable(f"Jito sendTransaction failed: {e}") from e

        if not isinstance(data, dict):
            raise LedgerUnavailable(f"Unexpected Jito response: {data!r}")
        if data.get("error"):
            error = data["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise SubmissionRejected(f"Jito relay rejected transaction: {message}")
        signature = data.get("result")
        if not signature:
            raise SubmissionRejected(f"Jito relay returned no signature: {data}")
        return signature

    async def transaction_status(self, receipt: str) -> ConfirmationResult:
        try:
            response = await self.client.get_transaction(
                Signature.from_string(receipt),
                commitment=self.commitment,
                max_supported_transaction_version=0
            )
        except (RPCException,) + TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"get_transaction({receipt}) failed: {e}") from e

        tx = response.value
        if tx is None:
            return ConfirmationResult.not_yet_visible()
        meta = tx.transaction.meta
        if meta is not None and meta.err is not None:
            return ConfirmationResult.rejected(str(meta.err))
        return ConfirmationResult.confirmed({"slot": tx.slot, "fee": meta.fee if meta else None})

    async def native_balance(self, owner: Pubkey) -> float:
        return await self.balance(owner, NATIVE_MINT) / LAMPORTS_PER_SOL

    async def token_balances(self, owner: Pubkey) -> List[Dict]:
        """Non-zero SPL token balances held by owner."""
        try:
            response = await self.client.get_token_accounts_by_owner_json_parsed(
                owner,
                TokenAccountOpts(program_id=TOKEN_PROGRAM_ID),
                commitment=self.commitment
            )
        except (RPCException,) + TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"get_token_accounts_by_owner({owner}) failed: {e}") from e

        balances = []
        for keyed in response.value:
            info = keyed.account.data.parsed["info"]
            token_amount = info["tokenAmount"]
            raw = int(token_amount["amount"])
            if raw == 0:
                continue
            decimals = int(token_amount["decimals"])
            balances.append({
                "mint": info["mint"],
                "raw": raw,
                "decimals": decimals,
                "amount": raw / (10 ** decimals),
            })
        return balances
