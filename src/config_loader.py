# config_loader.py
# Fulfillment settings: strict environment variables plus the app-config-<env> DynamoDB table.
# Table rows are (config_key, environment, value); "global" rows are overridden by rows
# for the current ENVIRONMENT.

import os
import time
import boto3
from decimal import Decimal
from typing import Any, Dict, Optional, List
from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from kms_utils import kms_decrypt_wrapped

# ---------------- Environment ------------------------------------------------

class ConfigError(RuntimeError):
    pass

def require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        raise ConfigError(f"Missing required environment variable: {name}")
    return value

def region() -> str:
    return os.environ.get("AWS_REGION") or os.environ.get("AWS_DEFAULT_REGION") or "us-west-2"

def environment() -> str:
    return require_env("ENVIRONMENT")

def http_timeout() -> int:
    """Seconds for outbound carrier/proxy calls."""
    return int(os.environ.get("HTTP_TIMEOUT", "30"))

def env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")

# ---------------- DynamoDB handles -------------------------------------------

_dynamodb = None
_table = None

def dynamodb_resource():
    global _dynamodb
    if _dynamodb is None:
        _dynamodb = boto3.resource("dynamodb", region_name=region())
    return _dynamodb

def _config_table():
    global _table
    if _table is None:
        _table = dynamodb_resource().Table(require_env("APP_CONFIG_TABLE"))
    return _table

def to_jsonable(obj: Any) -> Any:
    """Decimals from DynamoDB become int or float, recursively."""
    if isinstance(obj, Decimal):
        return int(obj) if obj == obj.to_integral_value() else float(obj)
    if isinstance(obj, dict):
        return {k: to_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [to_jsonable(v) for v in obj]
    return obj

# ---------------- Cached snapshot --------------------------------------------

_cache_data: Optional[Dict[str, Any]] = None
_cache_expires_at: float = 0.0

def _rows_for(env: str) -> List[Dict[str, Any]]:
    rows: List[Dict[str, Any]] = []
    scan_kwargs: Dict[str, Any] = {"FilterExpression": Attr("environment").eq(env)}
    while True:
        page = _config_table().scan(**scan_kwargs)
        rows.extend(page.get("Items", []))
        if not page.get("LastEvaluatedKey"):
            return rows
        scan_kwargs["ExclusiveStartKey"] = page["LastEvaluatedKey"]

def _read_snapshot() -> Dict[str, Any]:
    env = environment()
    merged: Dict[str, Any] = {}
    for scope in ("global", env):
        merged.update({row["config_key"]: row.get("value") for row in _rows_for(scope)})
    merged["environment"] = env
    return to_jsonable(merged)

def load_config(force: bool = False) -> Dict[str, Any]:
    """
    Merged settings for the current ENVIRONMENT, cached for CONFIG_CACHE_TTL_SECONDS
    (default 60). force=True re-reads the table.
    """
    global _cache_data, _cache_expires_at
    now = time.time()
    if _cache_data is not None and not force and now < _cache_expires_at:
        return _cache_data

    try:
        snapshot = _read_snapshot()
    except ClientError as e:
        raise ConfigError(f"Could not read app config: {e.response.get('Error', {}).get('Message', 'unknown')}")

    ttl = int(os.environ.get("CONFIG_CACHE_TTL_SECONDS", "60"))
    _cache_data, _cache_expires_at = snapshot, now + max(ttl, 1)
    return snapshot

def get_value(key: str, default: Any = None, *, required: bool = False) -> Any:
    """Empty strings count as unset."""
    cfg = load_config()
    value = cfg.get(key)
    if value is not None and value != "":
        return value
    if required:
        raise ConfigError(f"Missing required config key: {key} (env={cfg.get('environment')})")
    return default

def get_secret(key: str, env_var: Optional[str] = None) -> str:
    """
    env_var (when given and set) wins over the table value. ENCRYPTED(...) values
    are decrypted through KMS. Returns "" when nothing is configured.
    """
    if env_var:
        override = (os.environ.get(env_var) or "").strip()
        if override:
            return kms_decrypt_wrapped(override)
    stored = get_value(key)
    return kms_decrypt_wrapped(str(stored)).strip() if stored else ""

def get_bool(key: str, default: bool = False) -> bool:
    value = get_value(key, default)
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")

def invalidate_cache() -> None:
    global _cache_data, _cache_expires_at
    _cache_data, _cache_expires_at = None, 0.0

def resolved_source() -> Dict[str, str]:
    """Where settings come from, for log lines."""
    return {
        "environment": os.environ.get("ENVIRONMENT", ""),
        "table": os.environ.get("APP_CONFIG_TABLE", ""),
        "region": region(),
    }
