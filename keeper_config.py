import os
import logging
from decimal import Decimal

from dotenv import load_dotenv
from web3 import Web3

# --- 1. ENVIRONMENT ---

# Load Environment Variables
ENV_PATH = os.getenv("KEEPER_ENV_PATH", ".env")
load_dotenv(ENV_PATH)

# Logging Setup
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s | %(levelname)s | %(message)s')
logger = logging.getLogger("ZapKeeper")


def _env_int(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(f"⚠️ Invalid integer for {name}={raw!r}, using {default}")
        return default


def _env_decimal(name, default):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return Decimal(default)
    try:
        return Decimal(raw)
    except ArithmeticError:
        logger.warning(f"⚠️ Invalid number for {name}={raw!r}, using {default}")
        return Decimal(default)


# --- 2. REQUIRED SETTINGS ---

VAULT_ADDRESS = os.getenv("VAULT_ADDRESS")
BASE_RPC_URL = os.getenv("BASE_RPC_URL")
PRIVATE_KEY = os.getenv("PRIVATE_KEY")
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")

REQUIRED_KEYS = ("VAULT_ADDRESS", "BASE_RPC_URL", "PRIVATE_KEY", "ANTHROPIC_API_KEY")

# --- 3. OPTIONAL SETTINGS ---

FALLBACK_RPCS_RAW = os.getenv("FALLBACK_RPCS", "").replace('"', '').replace("'", "")
FALLBACK_RPCS = [r.strip() for r in FALLBACK_RPCS_RAW.split(",") if r.strip()]

ANTHROPIC_MODEL = os.getenv("ANTHROPIC_MODEL", "claude-opus-4-6")
ORACLE_TIMEOUT_SEC = _env_int("ORACLE_TIMEOUT_SEC", 30)
ORACLE_MAX_TOKENS = 300

POLL_INTERVAL_MS = _env_int("POLL_INTERVAL_MS", 30_000)
DISCOVERY_LOOKBACK_BLOCKS = _env_int("DISCOVERY_LOOKBACK_BLOCKS", 10_000)
RECEIPT_TIMEOUT_SEC = _env_int("RECEIPT_TIMEOUT_SEC", 120)
CHAIN_ID = _env_int("CHAIN_ID", None)
PRIORITY_FEE_GWEI = _env_decimal("PRIORITY_FEE_GWEI", "0.01")

# Gas budget used for the prompt's cost estimate and as the gas-limit fallback
REBALANCE_GAS_ESTIMATE = 500_000

TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN")
TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID")
EXPLORER_TX_URL = os.getenv("EXPLORER_TX_URL", "https://basescan.org/tx/")


def missing_config(env=None):
    """Returns the names of required settings that are unset or blank.

    Reads ``os.environ`` (after .env loading) unless an explicit mapping is given.
    """
    env = os.environ if env is None else env
    return [key for key in REQUIRED_KEYS if not (env.get(key) or "").strip()]


def validate_config(env=None):
    """Returns a list of human-readable startup errors; empty when config is usable."""
    env = os.environ if env is None else env
    errors = [f"Missing {key}" for key in missing_config(env)]
    vault = (env.get("VAULT_ADDRESS") or "").strip()
    if vault and not Web3.is_address(vault):
        errors.append(f"VAULT_ADDRESS is not a valid address: {vault}")
    return errors
