# stripe_webhook.py
# POST /webhooks/stripe
# Verifies the Stripe-Signature header, then dedupes + stores + reconciles the event.

import json
import logging
import os

import stripe

from config_loader import ConfigError, get_secret
from fulfillment_store import get_store
from http_utils import error, header, raw_body, resp
from webhook_reconciler import ingest_payment_webhook

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _resolve_webhook_secret() -> str:
    """
    Resolve the signing secret in order of preference:
    1. Environment variable STRIPE_WEBHOOK_SECRET
    2. app-config `stripe_webhook_secret` (ENCRYPTED(...) values are KMS-decrypted)
    """
    env_whsec = (os.environ.get("STRIPE_WEBHOOK_SECRET") or "").strip()
    if env_whsec:
        logger.info("[STRIPE-WH] Using webhook secret from environment variable")
        return env_whsec
    try:
        return get_secret("stripe_webhook_secret")
    except ConfigError as e:
        logger.error(f"[STRIPE-WH] Webhook secret resolution failed: {e}")
        return ""


def lambda_handler(event, _context):
    method = (event.get("httpMethod") or "").upper()
    if method == "OPTIONS":
        return resp(200, {"ok": True})
    if method != "POST":
        return error(405, "Method not allowed")

    secret = _resolve_webhook_secret()
    if not secret:
        return error(501, "Stripe webhook secret not configured")

    sig = header(event, "Stripe-Signature")
    if not sig:
        logger.error("[STRIPE-WH] Missing Stripe-Signature header")
        return error(400, "Missing Stripe-Signature")

    payload = raw_body(event)
    try:
        stripe.Webhook.construct_event(payload=payload, sig_header=sig, secret=secret)
        logger.info("[STRIPE-WH] ✅ Signature verified successfully")
    except stripe.SignatureVerificationError as e:
        logger.error(f"[STRIPE-WH] ❌ Signature verification failed: {e}")
        return error(400, "Invalid signature")
    except ValueError as e:
        logger.error(f"[STRIPE-WH] ❌ Invalid payload: {e}")
        return error(400, "Invalid payload")

    # plain dict of the verified payload, as stored and reconciled
    evt = json.loads(payload)
    logger.info(f"[STRIPE-WH] Processing event {evt.get('id')} type={evt.get('type')}")

    try:
        result = ingest_payment_webhook(get_store(), evt)
    except ValueError as e:
        return error(400, str(e))
    except Exception as e:
        logger.error(f"[STRIPE-WH] could not record event: {e}", exc_info=True)
        return error(500, "Failed to record webhook")
    return resp(200, result)
