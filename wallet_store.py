import os
import json
import time
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import base58
from cryptography.fernet import Fernet, InvalidToken
from solders.keypair import Keypair
from xrpl.core.addresscodec import is_valid_classic_address
from xrpl.wallet import Wallet

from config import DEFAULT_TRADE_SETTINGS
from errors import InvalidDestination
from ledger import is_valid_wallet_address

CHAINS = ("solana", "xrp")


@dataclass
class WalletRecord:
    exists: bool
    user_id: str
    username: Optional[str] = None
    public_key: Optional[str] = None
    private_key: Optional[str] = None
    withdraw_address: Optional[str] = None
    xrp_public_key: Optional[str] = None
    xrp_private_key: Optional[str] = None
    xrp_withdraw_address: Optional[str] = None

    def for_chain(self, chain: str):
        """(address, secret, withdraw address) of the wallet on `chain`."""
        if chain == "xrp":
            return self.xrp_public_key, self.xrp_private_key, self.xrp_withdraw_address
        return self.public_key, self.private_key, self.withdraw_address


class WalletStore:
    """Custodial wallets kept in a JSON file, private keys encrypted with Fernet."""

    def __init__(self, path: str, encryption_key: Optional[str] = None):
        self.path = path
        if encryption_key is None:
            logging.warning("WALLET_ENCRYPTION_KEY not set, generated a temporary key. Stored wallets will be unreadable after restart.")
            encryption_key = Fernet.generate_key().decode()
        self.cipher = Fernet(encryption_key.encode() if isinstance(encryption_key, str) else encryption_key)
        self._data: Dict[str, Dict] = {}
        self._load()

    def _load(self):
        if os.path.exists(self.path):
            with open(self.path, "r") as f:
                self._data = json.load(f)
        else:
            self._data = {"users": {}}
            self._save()

    def _save(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = self.path + ".tmp"
        with open(tmp_path, "w") as f:
            json.dump(self._data, f, indent=4)
        os.replace(tmp_path, self.path)

    def _user(self, user_id) -> Optional[Dict]:
        return self._data["users"].get(str(user_id))

    def _encrypt(self, secret: str) -> str:
        return self.cipher.encrypt(secret.encode()).decode()

    def _decrypt(self, token: str) -> str:
        try:
            return self.cipher.decrypt(token.encode()).decode()
        except InvalidToken:
            raise ValueError("Stored private key cannot be decrypted with the configured key")

    def register_user(self, user_id, username: Optional[str] = None) -> WalletRecord:
        """Create the user on first contact and make sure they own a wallet."""
        user = self._user(user_id)
        if user is None:
            user = {
                "username": username,
                "created_at": time.time(),
                "settings": dict(DEFAULT_TRADE_SETTINGS),
                "trades": [],
            }
            self._data["users"][str(user_id)] = user
            logging.info(f"Registered user {user_id}")
        elif username and user.get("username") != username:
            user["username"] = username
        if not user.get("public_key") or not user.get("private_key"):
            self._store_keypair(user, Keypair())
        if not user.get("xrp_public_key") or not user.get("xrp_private_key"):
            self._store_xrp_wallet(user, Wallet.create())
        self._save()
        return self.check_wallet(user_id)

    def check_wallet(self, user_id) -> WalletRecord:
        user = self._user(user_id)
        if user is None or not user.get("public_key"):
            return WalletRecord(exists=False, user_id=str(user_id))
        return WalletRecord(
            exists=True,
            user_id=str(user_id),
            username=user.get("username"),
            public_key=user["public_key"],
            private_key=self._decrypt(user["private_key"]),
            withdraw_address=user.get("withdraw_address"),
            xrp_public_key=user.get("xrp_public_key"),
            xrp_private_key=self._decrypt(user["xrp_private_key"]) if user.get("xrp_private_key") else None,
            xrp_withdraw_address=user.get("xrp_withdraw_address"),
        )

    def _store_keypair(self, user: Dict, keypair: Keypair):
        user["public_key"] = str(keypair.pubkey())
        user["private_key"] = self._encrypt(base58.b58encode(bytes(keypair)).decode())

    def _store_xrp_wallet(self, user: Dict, wallet: Wallet):
        user["xrp_public_key"] = wallet.classic_address
        user["xrp_private_key"] = self._encrypt(wallet.seed)

    def generate_wallet(self, user_id, chain: str = "solana") -> WalletRecord:
        """Replace the user's wallet on `chain` with a fresh one."""
        if chain not in CHAINS:
            raise ValueError(f"Unknown chain {chain}")
        user = self._user(user_id)
        if user is None:
            raise KeyError(f"Unknown user {user_id}")
        if chain == "xrp":
            self._store_xrp_wallet(user, Wallet.create())
        else:
            self._store_keypair(user, Keypair())
        self._save()
        logging.info(f"{chain.capitalize()} wallet stored for user: {user_id}")
        return self.check_wallet(user_id)

    def set_withdraw_address(self, user_id, address: str, chain: str = "solana") -> WalletRecord:
        address = address.strip()
        if chain == "xrp":
            if not is_valid_classic_address(address):
                raise InvalidDestination(f"Invalid XRP withdraw address: {address}")
            field_name = "xrp_withdraw_address"
        elif chain == "solana":
            if not is_valid_wallet_address(address):
                raise InvalidDestination(f"Invalid Solana withdraw address: {address}")
            field_name = "withdraw_address"
        else:
            raise ValueError(f"Unknown chain {chain}")
        user = self._user(user_id)
        if user is None:
            raise KeyError(f"Unknown user {user_id}")
        user[field_name] = address
        self._save()
        logging.info(f"{chain.capitalize()} withdraw address updated for user: {user_id}")
        return self.check_wallet(user_id)

    def load_settings(self, user_id) -> Dict:
        user = self._user(user_id)
        settings = dict(DEFAULT_TRADE_SETTINGS)
        if user is not None:
            settings.update(user.get("settings", {}))
        return settings

    def save_settings(self, user_id, settings: Dict) -> Dict:
        user = self._user(user_id)
        if user is None:
            raise KeyError(f"Unknown user {user_id}")
        user.setdefault("settings", {}).update(settings)
        self._save()
        return self.load_settings(user_id)

    def store_trade(self, user_id, trade: Dict):
        user = self._user(user_id)
        if user is None:
            raise KeyError(f"Unknown user {user_id}")
        record = dict(trade)
        record.setdefault("timestamp", time.time())
        user.setdefault("trades", []).append(record)
        self._save()

    def trade_history(self, user_id, limit: int = 10) -> List[Dict]:
        user = self._user(user_id)
        if user is None:
            return []
        return user.get("trades", [])[-limit:]
