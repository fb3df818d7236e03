# shippo_webhook.py
# POST /webhooks/shippo
# Shared-secret check, then dedupe + store + reconcile via webhook_reconciler.

import hmac
import json
import logging
import os

from config_loader import ConfigError, get_secret
from fulfillment_store import get_store
from http_utils import error, header, raw_body, resp
from webhook_reconciler import ingest_shipping_webhook

logger = logging.getLogger()
logger.setLevel(logging.INFO)

SECRET_HEADERS = ("x-shippo-secret", "shippo-secret", "authorization")


def _webhook_secret() -> str:
    env_secret = (os.environ.get("SHIPPO_WEBHOOK_SECRET") or "").strip()
    if env_secret:
        return env_secret
    try:
        return get_secret("shippo_webhook_secret")
    except ConfigError as e:
        logger.error(f"[SHIPPO-WH] could not resolve webhook secret: {e}")
        return ""


def _provided_secret(event) -> str:
    for name in SECRET_HEADERS:
        v = header(event, name)
        if v:
            v = v.strip()
            if name == "authorization" and v.lower().startswith("bearer "):
                v = v[7:].strip()
            return v
    return ""


def is_authorized(event, secret: str) -> bool:
    provided = _provided_secret(event)
    # an unconfigured secret rejects everything
    if not secret or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8"))


def lambda_handler(event, _context):
    method = (event.get("httpMethod") or "").upper()
    if method == "OPTIONS":
        return resp(200, {"ok": True})
    if method != "POST":
        return error(405, "Method not allowed")

    if not is_authorized(event, _webhook_secret()):
        logger.warning("[SHIPPO-WH] ❌ unauthorized delivery")
        return error(401, "Unauthorized")

    try:
        body = raw_body(event)
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return error(400, "Invalid JSON")
    if not isinstance(payload, dict):
        return error(400, "Invalid JSON")

    try:
        result = ingest_shipping_webhook(get_store(), payload, body)
    except Exception as e:
        # nothing stored yet; a non-2xx lets the sender retry
        logger.error(f"[SHIPPO-WH] could not record event: {e}", exc_info=True)
        return error(500, "Failed to record webhook")

    logger.info(f"[SHIPPO-WH] ✅ accepted deduped={bool(result.get('deduped'))}")
    return resp(200, result)
