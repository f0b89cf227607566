import asyncio
import logging
from typing import Dict, List

import httpx
from xrpl.asyncio.clients import AsyncJsonRpcClient
from xrpl.asyncio.clients.exceptions import XRPLRequestFailureException
from xrpl.asyncio.transaction import autofill_and_sign
from xrpl.asyncio.transaction import submit as submit_transaction
from xrpl.constants import XRPLException
from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.models.requests import AccountInfo, AccountLines, ServerState, Tx
from xrpl.models.transactions import Payment
from xrpl.wallet import Wallet

from config import DEFAULT_XRP_RPC_URL, XRP_FEE_DROPS
from confirmation import ConfirmationResult
from errors import InvalidAsset, InvalidCredential, InvalidDestination, LedgerUnavailable, SubmissionRejected

XRP = "XRP"
DROPS_PER_XRP = 1_000_000

XRP_TRANSPORT_ERRORS = (httpx.HTTPError, asyncio.TimeoutError, OSError)

# Engine result prefixes that mean the transaction will never be applied
FATAL_ENGINE_PREFIXES = ("tem", "tef")


def decode_currency(code: str) -> str:
    """Three-letter codes pass through; 40-hex codes are decoded to ASCII."""
    if len(code) == 40:
        try:
            return bytes.fromhex(code).rstrip(b"\x00").decode("ascii")
        except (ValueError, UnicodeDecodeError):
            return code
    return code


class XrpLedger:
    """Native XRP balances, reserves, payments and lookups against an XRPL JSON-RPC node.

    Amounts are drops. Only native XRP can be swept; issued currencies are
    listed by `token_balances` but not transferred.
    """

    chain = "xrp"
    native_symbol = XRP
    native_asset = XRP
    native_decimals = 6

    def __init__(self, rpc_url: str = DEFAULT_XRP_RPC_URL, fee_drops: int = XRP_FEE_DROPS, client=None):
        self.rpc_url = rpc_url
        self.fee_drops = fee_drops
        self.client = client or AsyncJsonRpcClient(rpc_url)

    async def close(self):
        # AsyncJsonRpcClient opens a connection per request
        pass

    def load_wallet(self, secret: str) -> Wallet:
        try:
            return Wallet.from_seed(secret.strip())
        except (XRPLException, ValueError, TypeError, AttributeError) as e:
            raise InvalidCredential(f"Invalid XRP wallet seed: {e}") from e

    def parse_destination(self, address: str) -> str:
        address = address.strip() if isinstance(address, str) else address
        if not isinstance(address, str) or not is_valid_classic_address(address):
            raise InvalidDestination(f"Invalid XRP destination address: {address}")
        return address

    def parse_asset(self, asset: str) -> str:
        if isinstance(asset, str) and asset.strip().upper() == XRP:
            return XRP
        raise InvalidAsset(f"Only native XRP can be transferred, got: {asset}")

    def address_of(self, wallet: Wallet) -> str:
        return wallet.classic_address

    async def _request(self, request):
        try:
            return await self.client.request(request)
        except XRP_TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"{type(request).__name__} request failed: {e}") from e

    async def _account_data(self, owner: str):
        response = await self._request(AccountInfo(account=owner, ledger_index="validated"))
        if response.is_successful():
            return response.result["account_data"]
        if response.result.get("error") == "actNotFound":
            return None
        raise LedgerUnavailable(f"account_info({owner}) failed: {response.result.get('error')}")

    async def balance(self, owner: str, asset: str) -> int:
        """Validated balance in drops; an unfunded account holds 0."""
        data = await self._account_data(owner)
        if data is None:
            return 0
        return int(data["Balance"])

    async def retained_minimum(self, owner: str, asset: str, fees=None) -> int:
        """Account reserve (base plus one increment per owned object) and the payment fee."""
        response = await self._request(ServerState())
        if not response.is_successful():
            raise LedgerUnavailable(f"server_state failed: {response.result.get('error')}")
        validated = response.result["state"]["validated_ledger"]
        data = await self._account_data(owner)
        owner_count = int(data.get("OwnerCount", 0)) if data else 0
        reserve = int(validated["reserve_base"]) + owner_count * int(validated["reserve_inc"])
        return reserve + self.fee_drops

    async def build_transfer(self, wallet: Wallet, destination: str, asset: str, amount: int, fees=None) -> Payment:
        """Signed Payment of `amount` drops with sequence and LastLedgerSequence filled in."""
        payment = Payment(
            account=wallet.classic_address,
            destination=destination,
            amount=str(amount),
            fee=str(self.fee_drops),
        )
        try:
            return await autofill_and_sign(transaction=payment, client=self.client, wallet=wallet)
        except XRP_TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"autofill failed: {e}") from e
        except XRPLRequestFailureException as e:
            raise SubmissionRejected(f"Could not prepare XRP payment: {e}") from e

    async def submit(self, tx: Payment) -> str:
        """Broadcast a signed payment and return its hash."""
        try:
            response = await submit_transaction(tx, self.client)
        except XRP_TRANSPORT_ERRORS as e:
            raise LedgerUnavailable(f"submit failed: {e}") from e
        except XRPLRequestFailureException as e:
            raise SubmissionRejected(f"Transaction rejected by XRPL node: {e}") from e

        engine_result = response.result.get("engine_result", "")
        if engine_result.startswith(FATAL_ENGINE_PREFIXES):
            raise SubmissionRejected(
                f"Transaction rejected by XRPL node: {engine_result} {response.result.get('engine_result_message', '')}"
            )
        if engine_result.startswith("tel"):
            raise LedgerUnavailable(f"Node did not relay transaction: {engine_result}")
        tx_hash = tx.get_hash()
        logging.info(f"XRP payment {tx_hash} submitted: {engine_result}")
        return tx_hash

    async def transaction_status(self, receipt: str) -> ConfirmationResult:
        response = await self._request(Tx(transaction=receipt))
        if not response.is_successful():
            if response.result.get("error") == "txnNotFound":
                return ConfirmationResult.not_yet_visible()
            raise LedgerUnavailable(f"tx({receipt}) failed: {response.result.get('error')}")

        result = response.result
        if not result.get("validated"):
            return ConfirmationResult.not_yet_visible()
        code = result.get("meta", {}).get("TransactionResult")
        if code != "tesSUCCESS":
            return ConfirmationResult.rejected(code)
        tx_json = result.get("tx_json", result)
        return ConfirmationResult.confirmed({"ledger_index": result.get("ledger_index"), "fee": tx_json.get("Fee")})

    async def native_balance(self, owner: str) -> float:
        return await self.balance(owner, XRP) / DROPS_PER_XRP

    async def token_balances(self, owner: str) -> List[Dict]:
        """Non-zero trust line balances held by owner."""
        response = await self._request(AccountLines(account=owner))
        if not response.is_successful():
            if response.result.get("error") == "actNotFound":
                return []
            raise LedgerUnavailable(f"account_lines({owner}) failed: {response.result.get('error')}")

        balances = []
        for line in response.result.get("lines", []):
            amount = float(line["balance"])
            if amount == 0:
                continue
            balances.append({
                "mint": f"{decode_currency(line['currency'])}.{line['account']}",
                "amount": amount,
                "decimals": 6,
            })
        return balances
