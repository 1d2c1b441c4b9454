"""Configuration management for the Escrow Lifecycle Engine"""

import os
import logging
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


def _int_list(raw: Optional[str]) -> List[int]:
    """Parse a comma-separated list of integer ids, skipping blanks and junk"""
    values = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            values.append(int(part))
        except ValueError:
            logger.warning(f"⚠️ Ignoring non-numeric id in config list: {part!r}")
    return values


# Known token deployments: (asset, network) -> (contract address, decimals)
_DEFAULT_TOKEN_DEPLOYMENTS: Dict[Tuple[str, str], Tuple[str, int]] = {
    ("USDT", "BSC"): ("0x55d398326f99059fF775485246999027B3197955", 18),
    ("USDC", "BSC"): ("0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d", 18),
    ("BUSD", "BSC"): ("0xe9e7CEA3DedcA5984780Bafc599bD69ADd087D56", 18),
    ("USDT", "ETH"): ("0xdAC17F958D2ee523a2206206994597C13D831ec7", 6),
    ("USDC", "ETH"): ("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", 6),
    ("USDT", "SEPOLIA"): ("", 6),
}


def _load_token_settings() -> Dict[Tuple[str, str], Dict[str, object]]:
    """Build token settings, letting <ASSET>_<NETWORK> env vars override contracts"""
    settings = {}
    for (asset, network), (default_contract, default_decimals) in _DEFAULT_TOKEN_DEPLOYMENTS.items():
        contract = os.getenv(f"{asset}_{network}", default_contract)
        if not contract:
            continue
        decimals = int(os.getenv(f"{asset}_{network}_DECIMALS", str(default_decimals)))
        settings[(asset, network)] = {"contract": contract, "decimals": decimals}
    return settings


def _load_deposit_addresses() -> Dict[Tuple[str, str], str]:
    addresses = {}
    for asset, network in _DEFAULT_TOKEN_DEPLOYMENTS:
        address = os.getenv(f"DEPOSIT_ADDRESS_{asset}_{network}")
        if address:
            addresses[(asset, network)] = address
    return addresses


class Config:
    """Application configuration"""

    # Environment detection
    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./escrow.db")
    DATABASE_POOL_SIZE = int(os.getenv("DATABASE_POOL_SIZE", "7"))
    DATABASE_MAX_OVERFLOW = int(os.getenv("DATABASE_MAX_OVERFLOW", "15"))

    # Telegram (participant management only)
    BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN") or os.getenv("BOT_TOKEN")
    INVITE_MEMBER_LIMIT = int(os.getenv("INVITE_MEMBER_LIMIT", "2"))

    # Privileged actors and identities that recycling must never evict
    ADMIN_USER_IDS = _int_list(os.getenv("ADMIN_USER_IDS", os.getenv("ADMIN_USER_ID")))
    PROTECTED_PARTICIPANT_IDS = _int_list(os.getenv("PROTECTED_PARTICIPANT_IDS"))
    SERVICE_IDENTITY_ID = int(os.getenv("SERVICE_IDENTITY_ID", "0")) or None

    # Chain RPC endpoints per network
    CHAIN_RPC_URLS: Dict[str, str] = {
        network: url
        for network, url in {
            "BSC": os.getenv("BSC_RPC_URL", "https://bsc-dataseed.binance.org/"),
            "ETH": os.getenv("ETH_RPC_URL", "https://eth.llamarpc.com"),
            "SEPOLIA": os.getenv("SEPOLIA_RPC_URL"),
        }.items()
        if url
    }

    # Chain client rate limiting and retry policy
    CHAIN_MAX_CONCURRENCY = int(os.getenv("CHAIN_MAX_CONCURRENCY", "5"))
    CHAIN_MIN_INTERVAL_MS = int(os.getenv("CHAIN_MIN_INTERVAL_MS", "150"))
    CHAIN_MAX_ATTEMPTS = int(os.getenv("CHAIN_MAX_ATTEMPTS", "3"))
    CHAIN_BACKOFF_BASE_SECONDS = float(os.getenv("CHAIN_BACKOFF_BASE_SECONDS", "1.0"))
    CHAIN_REQUEST_TIMEOUT = int(os.getenv("CHAIN_REQUEST_TIMEOUT", "15"))

    # Token deployments and custodial deposit addresses
    TOKEN_SETTINGS = _load_token_settings()
    DEPOSIT_ADDRESSES = _load_deposit_addresses()

    # Trade limits and reconciliation
    MIN_TRADE_AMOUNT = Decimal(os.getenv("MIN_TRADE_AMOUNT", "1"))
    MAX_TRADE_AMOUNT = Decimal(os.getenv("MAX_TRADE_AMOUNT", "100000"))
    DEPOSIT_TOLERANCE = Decimal(os.getenv("DEPOSIT_TOLERANCE", "0.01"))
    CAS_MAX_ATTEMPTS = int(os.getenv("CAS_MAX_ATTEMPTS", "5"))

    # Channel pool timing
    RECYCLE_GRACE_MINUTES = int(os.getenv("RECYCLE_GRACE_MINUTES", "15"))
    PARKED_CHANNEL_RETRY_MINUTES = int(os.getenv("PARKED_CHANNEL_RETRY_MINUTES", "10"))
    INACTIVITY_TIMEOUT_MINUTES = int(os.getenv("INACTIVITY_TIMEOUT_MINUTES", "120"))
    INACTIVITY_SWEEP_MINUTES = int(os.getenv("INACTIVITY_SWEEP_MINUTES", "10"))

    # Button click debounce window
    CLICK_DEBOUNCE_SECONDS = int(os.getenv("CLICK_DEBOUNCE_SECONDS", "3"))

    # External fund movement service
    FUND_MOVEMENT_URL = os.getenv("FUND_MOVEMENT_URL")
    FUND_MOVEMENT_API_KEY = os.getenv("FUND_MOVEMENT_API_KEY")
    FUND_MOVEMENT_TIMEOUT = int(os.getenv("FUND_MOVEMENT_TIMEOUT", "60"))

    @staticmethod
    def get_token_settings(asset: str, network: str) -> Dict[str, object]:
        """Contract address and decimal precision for an (asset, network) pair"""
        from services.escrow_errors import ValidationError

        key = ((asset or "").upper(), (network or "").upper())
        settings = Config.TOKEN_SETTINGS.get(key)
        if not settings:
            raise ValidationError(
                f"Unsupported token {key[0]} on {key[1]}",
                user_message=f"❌ {key[0]} on {key[1]} is not supported.",
            )
        return settings

    @staticmethod
    def get_deposit_address(asset: str, network: str) -> str:
        from services.escrow_errors import ValidationError

        key = ((asset or "").upper(), (network or "").upper())
        address = Config.DEPOSIT_ADDRESSES.get(key)
        if not address:
            raise ValidationError(
                f"No deposit address configured for {key[0]} on {key[1]}",
                user_message=f"❌ Deposits in {key[0]} on {key[1]} are not available right now.",
            )
        return address

    @staticmethod
    def log_environment_config():
        """Log current configuration for debugging (secrets omitted)"""
        logger.info("🔧 Escrow Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('@')[-1]}")
        logger.info(f"   Admins configured: {len(Config.ADMIN_USER_IDS)}")
        logger.info(f"   Chain networks: {', '.join(sorted(Config.CHAIN_RPC_URLS)) or 'none'}")
        logger.info(
            f"   Chain gate: {Config.CHAIN_MAX_CONCURRENCY} concurrent, "
            f"{Config.CHAIN_MIN_INTERVAL_MS}ms spacing, {Config.CHAIN_MAX_ATTEMPTS} attempts"
        )
        logger.info(f"   Token pairs: {', '.join(f'{a}/{n}' for a, n in sorted(Config.TOKEN_SETTINGS))}")
        if not Config.BOT_TOKEN:
            logger.warning("⚠️ No TELEGRAM_BOT_TOKEN - participant eviction is unavailable")
        if not Config.FUND_MOVEMENT_URL:
            logger.warning("⚠️ No FUND_MOVEMENT_URL - release/refund calls will fail")
