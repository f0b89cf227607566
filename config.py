import os
import logging
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Mints and well-known accounts
SOL_MINT = "So11111111111111111111111111111111111111112"
DEFAULT_JITO_TIP_ACCOUNT = "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5"
DEFAULT_RPC_URL = "https://api.mainnet-beta.solana.com"
DEFAULT_TRADE_API_URL = "https://api.smalltimedevs.com/solana/raydium-api"
RAYDIUM_PRICE_URL = "https://api-v3.raydium.io/mint/price"
DEFAULT_XRP_RPC_URL = "https://s1.ripple.com:51234/"

# Transfer constants
PRIORITY_FEE_MICRO_LAMPORTS = 270000
JITO_TIP_LAMPORTS = 50000
COMPUTE_UNIT_LIMIT = 200000
HARD_RETRIES = 100
CONFIRMATION_ATTEMPTS = 4
CONFIRMATION_MIN_TIMEOUT = 0.5
SETTLE_DELAY = 5.0
XRP_FEE_DROPS = 12

DEFAULT_TRADE_SETTINGS = {
    "slippage_bps": 50,
    "priority_fee": PRIORITY_FEE_MICRO_LAMPORTS,
    "use_jito": True,
}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {value!r}")


@dataclass
class Settings:
    telegram_bot_token: str
    rpc_url: str = DEFAULT_RPC_URL
    xrp_rpc_url: str = DEFAULT_XRP_RPC_URL
    jito_url: Optional[str] = None
    jito_tip_account: str = DEFAULT_JITO_TIP_ACCOUNT
    trade_api_url: str = DEFAULT_TRADE_API_URL
    wallet_encryption_key: Optional[str] = None
    data_dir: str = field(default_factory=lambda: os.path.join(os.path.dirname(os.path.abspath(__file__)), "data"))
    log_dir: str = field(default_factory=lambda: os.path.join(os.path.dirname(os.path.abspath(__file__)), "logs"))
    session_ttl: float = 900.0
    priority_fee_micro_lamports: int = PRIORITY_FEE_MICRO_LAMPORTS
    jito_tip_lamports: int = JITO_TIP_LAMPORTS
    compute_unit_limit: int = COMPUTE_UNIT_LIMIT
    max_attempts: int = HARD_RETRIES
    confirmation_attempts: int = CONFIRMATION_ATTEMPTS
    confirmation_min_timeout: float = CONFIRMATION_MIN_TIMEOUT
    settle_delay: float = SETTLE_DELAY

    @classmethod
    def from_env(cls) -> "Settings":
        token = os.getenv("TELEGRAM_BOT_TOKEN")
        if not token:
            raise ValueError("Missing required environment variable TELEGRAM_BOT_TOKEN")

        settings = cls(
            telegram_bot_token=token,
            rpc_url=os.getenv("RPC_URL", DEFAULT_RPC_URL),
            xrp_rpc_url=os.getenv("XRP_RPC_URL", DEFAULT_XRP_RPC_URL),
            jito_url=os.getenv("JITO_URL") or None,
            jito_tip_account=os.getenv("JITO_TIP_ACCOUNT", DEFAULT_JITO_TIP_ACCOUNT),
            trade_api_url=os.getenv("TRADE_API_URL", DEFAULT_TRADE_API_URL),
            wallet_encryption_key=os.getenv("WALLET_ENCRYPTION_KEY") or None,
            session_ttl=_env_float("SESSION_TTL", 900.0),
            priority_fee_micro_lamports=_env_int("PRIORITY_FEE_MICRO_LAMPORTS", PRIORITY_FEE_MICRO_LAMPORTS),
            jito_tip_lamports=_env_int("JITO_TIP_LAMPORTS", JITO_TIP_LAMPORTS),
            compute_unit_limit=_env_int("COMPUTE_UNIT_LIMIT", COMPUTE_UNIT_LIMIT),
            max_attempts=_env_int("TRANSFER_MAX_ATTEMPTS", HARD_RETRIES),
            confirmation_attempts=_env_int("CONFIRMATION_ATTEMPTS", CONFIRMATION_ATTEMPTS),
            confirmation_min_timeout=_env_float("CONFIRMATION_MIN_TIMEOUT", CONFIRMATION_MIN_TIMEOUT),
            settle_delay=_env_float("SETTLE_DELAY", SETTLE_DELAY),
        )
        if os.getenv("DATA_DIR"):
            settings.data_dir = os.getenv("DATA_DIR")
        if os.getenv("LOG_DIR"):
            settings.log_dir = os.getenv("LOG_DIR")
        return settings


def setup_logging(log_dir: str, level: int = logging.INFO):
    """Log to logs/bot.log under the given directory."""
    os.makedirs(log_dir, exist_ok=True)
    logging.basicConfig(
        level=level,
        filename=os.path.join(log_dir, "bot.log"),
        format="%(asctime)s - %(levelname)s - %(message)s"
    )
