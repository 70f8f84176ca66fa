"""
Offline till configuration.

All settings come from the environment (optionally a .env file next to the
process). Empty strings are treated as unset.

Env vars:
  POS_DB_PATH                      SQLite file for the local store (default: till.db)
  POS_BUSINESS_ID                  Tenant id this till works for
  POS_USER_ID                      Default acting user id for CLI tools
  POS_REQUIRE_CUSTOMER_FOR_CREDIT  '1' to require a customer on partial/unpaid sales
  POS_LOG_LEVEL                    Logging level name (default: INFO)
  LEDGER_URL                       Base URL of the hosted ledger (PostgREST style)
  LEDGER_API_KEY                   Project API key sent as the apikey header
  LEDGER_ACCESS_TOKEN              Bearer token for the acting session
  LEDGER_SUBMIT_RPC                RPC used to submit one offline sale
  LEDGER_TIMEOUT                   Seconds before a ledger call counts as transient failure
  SYNC_INTERVAL                    Seconds between worker sync cycles (default: 60)
  SYNC_MAX_ATTEMPTS                Transient failures before a sale is flagged (default: 8)
  SYNC_BACKOFF_BASE                First retry delay in seconds (default: 30)
  SYNC_BACKOFF_CAP                 Longest retry delay in seconds (default: 3600)
  CONNECTIVITY_INTERVAL            Seconds between connectivity probes (default: 15)
"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = '[till] %(asctime)s %(levelname)s %(name)s %(message)s'


def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env_string(name) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env_string(name) or default)
    except ValueError:
        return default


def _env_flag(name: str, default: bool = False) -> bool:
    raw = _env_string(name)
    if raw is None:
        return default
    return raw.lower() in ('1', 'true', 'yes', 'on')


@dataclass
class Settings:
    db_path: str = 'till.db'
    business_id: Optional[str] = None
    user_id: Optional[str] = None
    require_customer_for_credit: bool = False
    log_level: str = 'INFO'

    ledger_url: Optional[str] = None
    ledger_api_key: Optional[str] = None
    ledger_access_token: Optional[str] = None
    ledger_submit_rpc: str = 'submit_offline_sale'
    ledger_timeout: float = 15.0

    sync_interval: float = 60.0
    sync_max_attempts: int = 8
    sync_backoff_base: float = 30.0
    sync_backoff_cap: float = 3600.0
    connectivity_interval: float = 15.0

    store_name: str = 'Offline Till'
    store_address: str = ''
    store_phone: str = ''
    receipt_footer: str = 'Thank you for your business'

    host: str = '0.0.0.0'
    port: int = 5000
    debug: bool = False


def load_settings() -> Settings:
    """Build Settings from the current environment."""
    return Settings(
        db_path=_env_string('POS_DB_PATH', 'till.db'),
        business_id=_env_string('POS_BUSINESS_ID'),
        user_id=_env_string('POS_USER_ID'),
        require_customer_for_credit=_env_flag('POS_REQUIRE_CUSTOMER_FOR_CREDIT'),
        log_level=(_env_string('POS_LOG_LEVEL', 'INFO') or 'INFO').upper(),
        ledger_url=_env_string('LEDGER_URL'),
        ledger_api_key=_env_string('LEDGER_API_KEY'),
        ledger_access_token=_env_string('LEDGER_ACCESS_TOKEN'),
        ledger_submit_rpc=_env_string('LEDGER_SUBMIT_RPC', 'submit_offline_sale'),
        ledger_timeout=_env_float('LEDGER_TIMEOUT', 15.0),
        sync_interval=max(5.0, _env_float('SYNC_INTERVAL', 60.0)),
        sync_max_attempts=max(1, _env_int('SYNC_MAX_ATTEMPTS', 8)),
        sync_backoff_base=max(1.0, _env_float('SYNC_BACKOFF_BASE', 30.0)),
        sync_backoff_cap=max(1.0, _env_float('SYNC_BACKOFF_CAP', 3600.0)),
        connectivity_interval=max(1.0, _env_float('CONNECTIVITY_INTERVAL', 15.0)),
        store_name=_env_string('POS_STORE_NAME', 'Offline Till'),
        store_address=_env_string('POS_STORE_ADDRESS', ''),
        store_phone=_env_string('POS_STORE_PHONE', ''),
        receipt_footer=_env_string('POS_RECEIPT_FOOTER', 'Thank you for your business'),
        host=_env_string('HOST', '0.0.0.0'),
        port=_env_int('PORT', 5000),
        debug=_env_flag('FLASK_DEBUG'),
    )


def configure_logging(level_name: str = 'INFO') -> None:
    level = getattr(logging, (level_name or 'INFO').upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger('werkzeug').setLevel(level)
