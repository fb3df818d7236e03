# webhook_reconciler.py
# Turns inbound carrier / payment webhooks into shipment and order state.
#
# Shipping events arrive in several shapes (transaction_created, transaction_updated,
# track_updated, flat test payloads). normalize_shipping_event() reduces them to
#   {event_type, transaction_id, tracking_number, status, tracking_status}
# using ordered field-path fallbacks; the reconciliation below only sees that dict.

import re
import uuid
import hashlib
import logging
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)

SOURCE_SHIPPO = "shippo"
SOURCE_STRIPE = "stripe"

_PATHS: Dict[str, Sequence[Tuple[str, ...]]] = {
    "event_type": (("event",), ("type",), ("event_type",)),
    "transaction_id": (
        ("data", "object_id"),
        ("transaction", "object_id"),
        ("data", "transaction"),
        ("data", "transaction", "object_id"),
        ("transaction",),
    ),
    "tracking_number": (("data", "tracking_number"), ("tracking_number",)),
    "status": (("data", "status"), ("transaction", "status"), ("status",)),
    "tracking_status": (
        ("data", "tracking_status", "status"),
        ("data", "tracking_status"),
        ("tracking_status", "status"),
        ("tracking_status",),
    ),
}

_DELIVERED = re.compile(r"DELIVERED", re.IGNORECASE)
_SUCCESS = re.compile(r"SUCCESS", re.IGNORECASE)
_FAILED = re.compile(r"ERROR|FAIL", re.IGNORECASE)


def first_path(obj: Any, paths: Iterable[Tuple[str, ...]]) -> Optional[str]:
    """First non-empty scalar found along the given key paths."""
    for path in paths:
        cur = obj
        for key in path:
            if not isinstance(cur, dict):
                cur = None
                break
            cur = cur.get(key)
        if cur not in (None, "") and not isinstance(cur, (dict, list)):
            return str(cur)
    return None


def normalize_shipping_event(event: Dict[str, Any]) -> Dict[str, Optional[str]]:
    return {field: first_path(event, paths) for field, paths in _PATHS.items()}


def shipping_dedup_key(event: Dict[str, Any], raw_body: Union[str, bytes]) -> str:
    """The sender's own id when present, else sha256 of the raw body."""
    key = first_path(event, (("id",), ("data", "id"), ("data", "object_id")))
    if key:
        return key
    raw = raw_body.encode("utf-8") if isinstance(raw_body, str) else raw_body
    return hashlib.sha256(raw).hexdigest()


def decide_shipment_status(norm: Dict[str, Optional[str]]) -> Optional[str]:
    tracking = (norm.get("tracking_status") or "").upper()
    tx = (norm.get("status") or "").upper()
    if _DELIVERED.search(tracking):
        return "delivered"
    if _SUCCESS.search(tx):
        return "purchased"
    if _FAILED.search(tx):
        return "error"
    return None


def shipping_event_code(norm: Dict[str, Optional[str]], status_update: Optional[str]) -> str:
    code = (norm.get("event_type") or "").upper()
    if code:
        return code
    if status_update:
        return f"STATUS_{status_update.upper()}"
    return "WEBHOOK"


def find_shipment_for_event(store, norm: Dict[str, Optional[str]]) -> Optional[Dict[str, Any]]:
    shipment = None
    if norm.get("transaction_id"):
        shipment = store.find_shipment_by_label_object_id(norm["transaction_id"])
    if not shipment and norm.get("tracking_number"):
        shipment = store.find_shipment_by_tracking_number(norm["tracking_number"])
    return shipment


def reconcile_shipping_event(store, event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Link an already-recorded shipping event to its shipment and apply it.
    Status writes are unconditional (last write wins).
    """
    norm = normalize_shipping_event(event)
    shipment = find_shipment_for_event(store, norm)
    if not shipment:
        logger.info(f"[SHIPPO-WH] orphan event tx={norm.get('transaction_id')} tracking={norm.get('tracking_number')}")
        return {"matched": False}

    shipment_id = shipment["shipment_id"]
    status_update = decide_shipment_status(norm)
    code = shipping_event_code(norm, status_update)
    detail = norm.get("event_type") or norm.get("status") or norm.get("tracking_status") or ""
    store.add_shipment_event(shipment_id, code, f"Shippo webhook: {str(detail).upper()}", event)

    if status_update:
        store.update_shipment(shipment_id, {"status": status_update})
        if status_update == "delivered" and shipment.get("order_id"):
            store.update_order(shipment["order_id"], {"shipping_status": "delivered"})
    logger.info(f"[SHIPPO-WH] shipment={shipment_id} code={code} status={status_update}")
    return {"matched": True, "shipment_id": shipment_id, "status": status_update, "event_code": code}


def ingest_shipping_webhook(store, event: Dict[str, Any], raw_body: Union[str, bytes]) -> Dict[str, Any]:
    """Dedupe, store, then process. Processing failures are logged and swallowed."""
    key = shipping_dedup_key(event, raw_body)
    if store.get_webhook_event(SOURCE_SHIPPO, key):
        return {"ok": True, "deduped": True}
    if not store.record_webhook_event(SOURCE_SHIPPO, key, event):
        # lost the race to a concurrent delivery of the same event
        return {"ok": True, "deduped": True}

    try:
        reconcile_shipping_event(store, event)
    except Exception as e:
        logger.error(f"[SHIPPO-WH] processing failed for event {key} (stored): {e}", exc_info=True)
    return {"ok": True}


# =============== Payment events ===============

def invoice_order_id(invoice_id: str) -> str:
    """Stable order id for an invoice, so retries converge on the same order."""
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"urn:invoice:{invoice_id}"))


def _split_name(name: Optional[str]) -> Tuple[str, str]:
    parts = (name or "").split(" ")
    return parts[0], " ".join(parts[1:])


def materialize_invoice_order(store, invoice_id: str, payment_intent: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Create a paid order from an invoice.

    The order id is derived from the invoice id and the order is written with a
    conditional put before the invoice is claimed. A delivery that fails between
    the two steps leaves the invoice unclaimed, so the next payment event for it
    finishes the job; a replay or a concurrent delivery cannot create a second order.
    """
    invoice = store.get_invoice(invoice_id)
    if not invoice:
        logger.warning(f"[STRIPE-WH] invoice {invoice_id} not found for pi={payment_intent.get('id')}")
        return None

    order_id = invoice_order_id(invoice_id)
    linked = invoice.get("order_id")
    if linked and (linked != order_id or store.get_order(linked)):
        logger.info(f"[STRIPE-WH] invoice {invoice_id} already materialized as order {linked}")
        return None

    first, last = _split_name(invoice.get("name"))
    items = invoice.get("items") or []
    subtotal = sum(int(it.get("unit_price_cents") or 0) * int(it.get("quantity") or 0) for it in items)
    total = int(invoice.get("final_total_cents") or payment_intent.get("amount_received") or payment_intent.get("amount") or 0)
    order = {
        "order_id": order_id,
        "source": "invoice",
        "invoice_id": invoice_id,
        "customer_id": invoice.get("customer_id"),
        "customer": {"email": invoice.get("email"), "first_name": first, "last_name": last},
        "billing_name": invoice.get("name"),
        "line_items": [
            {
                "product_id": it.get("product_id"),
                "quantity": int(it.get("quantity") or 0),
                "unit_price_cents": int(it.get("unit_price_cents") or 0),
            }
            for it in items
        ],
        "subtotal_cents": subtotal or total,
        "total_cents": total,
        "currency": (payment_intent.get("currency") or "usd").lower(),
        "stripe_payment_intent_id": payment_intent.get("id"),
        "payment_status": "paid",
        "status": "paid",
        "order_status": "pending_fulfillment",
        "shipping_status": "not_shipped",
    }
    created = store.put_order(order)
    if created is None:
        logger.info(f"[STRIPE-WH] order {order_id} for invoice {invoice_id} already exists; finishing claim")
    store.claim_invoice(invoice_id, order_id)
    if created is None:
        return None
    logger.info(f"✅ [STRIPE-WH] invoice {invoice_id} -> order {order_id}")
    return order


def _payment_succeeded(store, pi: Dict[str, Any]) -> Dict[str, Any]:
    order = store.find_order_by_payment_intent(pi.get("id")) if pi.get("id") else None
    if order:
        if order.get("invoice_id"):
            # an earlier delivery may have written the order but not linked the invoice
            store.claim_invoice(order["invoice_id"], order["order_id"])
        if order.get("payment_status") != "paid" or order.get("order_status") == "pending_payment":
            store.update_order(order["order_id"], {
                "payment_status": "paid",
                "status": "paid",
                "order_status": "pending_fulfillment",
            })
            logger.info(f"✅ [STRIPE-WH] order {order['order_id']} marked paid")
            return {"order_id": order["order_id"], "action": "paid"}
        return {"order_id": order["order_id"], "action": "none"}

    invoice_id = (pi.get("metadata") or {}).get("invoice_id")
    if invoice_id:
        created = materialize_invoice_order(store, invoice_id, pi)
        if created:
            return {"order_id": created["order_id"], "action": "created_from_invoice"}
    return {"action": "none"}


def _payment_failed(store, pi: Dict[str, Any]) -> Dict[str, Any]:
    order = store.find_order_by_payment_intent(pi.get("id")) if pi.get("id") else None
    if order and order.get("order_status") == "pending_payment":
        store.update_order(order["order_id"], {"order_status": "cancelled"})
        logger.info(f"[STRIPE-WH] order {order['order_id']} cancelled after failed payment")
        return {"order_id": order["order_id"], "action": "cancelled"}
    return {"action": "none"}


def reconcile_payment_event(store, event: Dict[str, Any]) -> Dict[str, Any]:
    etype = event.get("type")
    pi = ((event.get("data") or {}).get("object")) or {}
    if etype == "payment_intent.succeeded":
        return _payment_succeeded(store, pi)
    if etype == "payment_intent.payment_failed":
        return _payment_failed(store, pi)
    # other events are stored for audit only
    return {"action": "ignored"}


def ingest_payment_webhook(store, event: Dict[str, Any]) -> Dict[str, Any]:
    """event must already be signature-verified."""
    key = event.get("id")
    if not key:
        raise ValueError("Payment event has no id")
    if store.get_webhook_event(SOURCE_STRIPE, key):
        return {"ok": True, "deduped": True}
    if not store.record_webhook_event(SOURCE_STRIPE, key, event):
        return {"ok": True, "deduped": True}

    try:
        reconcile_payment_event(store, event)
    except Exception as e:
        logger.error(f"[STRIPE-WH] processing failed for {event.get('type')} {key} (stored): {e}", exc_info=True)
    return {"ok": True}
