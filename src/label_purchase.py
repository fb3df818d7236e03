# label_purchase.py
# Rate quotes, label purchase, void and label-url recovery for one order.
#
# Purchase states:  requested -> purchased(no_url) -> purchased(url_ready)
#                   requested -> blocked  (carrier messages, nothing persisted)
#                   requested -> failed   (carrier rejected the purchase call, or the
#                                          transaction ended in a non-pending status
#                                          without a document; nothing persisted)
#
# Everything before carrier.purchase_label() may fail loudly. Everything after it
# is recorded as accurately as possible and never turns the purchase into a failure.

import os
import time
import logging
from typing import Any, Callable, Dict, List, Optional

from after_commit import AfterCommit, fire_and_log
from carriers import Carrier, CarrierError
from config_loader import ConfigError, get_bool
from email_service import send_shipment_confirmation, send_shipment_update
from fulfillment_store import NotFoundError
from shipment_context import (
    address_snapshot,
    build_context,
    build_parcel,
    load_origin,
    resolve_destination,
)

logger = logging.getLogger(__name__)

# Transaction statuses that mean "accepted, label may still be rendering"
PENDING_STATUSES = ("SUCCESS", "QUEUED", "WAITING", "COMPLETED", "PROCESSING")


class LabelConflictError(RuntimeError):
    pass


class LabelBlockedError(RuntimeError):
    def __init__(self, messages: List[str]):
        super().__init__("; ".join(messages) or "Label purchase blocked by carrier")
        self.messages = list(messages)


class InvalidStateError(RuntimeError):
    pass


def poll_attempts() -> int:
    return int(os.environ.get("LABEL_POLL_ATTEMPTS", "5"))


def poll_interval_seconds() -> float:
    return float(os.environ.get("LABEL_POLL_INTERVAL_SECONDS", "1.0"))


def is_blocking(label: Dict[str, Any]) -> bool:
    """No document, and the carrier sent messages or reported a non-pending status."""
    if label.get("label_url"):
        return False
    status = (label.get("status") or "").upper()
    if label.get("messages"):
        return status not in PENDING_STATUSES
    return bool(status) and status not in PENDING_STATUSES


def blocking_messages(label: Dict[str, Any]) -> List[str]:
    return list(label.get("messages") or []) or [f"Label purchase not successful ({label.get('status')})"]


def _require_order(store, order_id: str) -> Dict[str, Any]:
    order = store.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    return order


# =============== Rates ===============

def get_rates_for_order(store, carrier: Carrier, order_id: str, package_id: Optional[str] = None,
                        package_name: Optional[str] = None) -> List[Dict[str, Any]]:
    order = _require_order(store, order_id)
    ctx = build_context(store, order, package_id, package_name)
    rates = carrier.get_rates(ctx["from_address"], ctx["to_address"], ctx["parcel"])
    logger.info(f"[RATES] order={order_id} provider={carrier.name} rates={len(rates)}")
    return rates


# =============== Label lookups ===============

def _merge_lookup(label: Dict[str, Any], looked: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    if not looked:
        return label
    merged = dict(label)
    for k in ("label_url", "tracking_number", "tracking_url", "status"):
        if looked.get(k):
            merged[k] = looked[k]
    if looked.get("messages"):
        merged["messages"] = looked["messages"]
    return merged


def _lookup(carrier: Carrier, label: Dict[str, Any], step: str) -> Dict[str, Any]:
    ok, looked = fire_and_log(
        f"[LABEL] {step} tx={label.get('transaction_id')}",
        carrier.resolve_label_url,
        label["transaction_id"],
    )
    return _merge_lookup(label, looked) if ok else label


def await_label_url(carrier: Carrier, label: Dict[str, Any], attempts: Optional[int] = None,
                    interval: Optional[float] = None,
                    sleep: Callable[[float], None] = time.sleep) -> Dict[str, Any]:
    """
    The carrier may accept a purchase before the label document exists.
    One direct lookup, then up to `attempts` polls `interval` seconds apart.
    Stops early once a URL appears or the transaction is blocked or failed.
    """
    if label.get("label_url") or not label.get("transaction_id"):
        return label

    attempts = poll_attempts() if attempts is None else attempts
    interval = poll_interval_seconds() if interval is None else interval

    label = _lookup(carrier, label, "direct lookup")
    n = 0
    while not label.get("label_url") and not is_blocking(label) and n < attempts:
        n += 1
        sleep(interval)
        label = _lookup(carrier, label, f"poll {n}/{attempts}")

    if label.get("label_url"):
        logger.info(f"[LABEL] label_url resolved for tx={label['transaction_id']} after {n} poll(s)")
    else:
        logger.warning(f"[LABEL] label_url still missing for tx={label['transaction_id']} after {n} poll(s)")
    return label


# =============== Purchase ===============

def _shipment_fields(order_id: str, rate_id: str, label: Dict[str, Any], ctx: Dict[str, Any]) -> Dict[str, Any]:
    parcel = ctx["parcel"]
    return {
        "order_id": order_id,
        "status": "purchased",
        "carrier": label.get("carrier"),
        "service": label.get("service"),
        "tracking_number": label.get("tracking_number"),
        "tracking_url": label.get("tracking_url"),
        "label_url": label.get("label_url"),
        "rate_object_id": label.get("rate_id") or rate_id,
        "label_object_id": label.get("transaction_id"),
        "price_amount_cents": label.get("amount_cents"),
        "price_currency": label.get("currency") or "USD",
        **address_snapshot("to", ctx["to_address"]),
        **address_snapshot("from", ctx["from_address"]),
        "package_name": ctx["package"].get("name"),
        "weight_g": parcel["weight_g"],
        "length_cm": parcel["length_cm"],
        "width_cm": parcel["width_cm"],
        "height_cm": parcel["height_cm"],
    }


def _purchase_response(shipment_id: Optional[str], label: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "shipment_id": shipment_id,
        "label_url": label.get("label_url"),
        "tracking_number": label.get("tracking_number"),
        "tracking_url": label.get("tracking_url"),
        "carrier": label.get("carrier"),
        "service": label.get("service"),
    }


def _persist_shipment(store, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    # The carrier has charged for this label: try twice, then log everything needed to recover it
    for attempt in (1, 2):
        ok, shipment = fire_and_log(f"[LABEL] persist shipment (attempt {attempt})", store.create_shipment, fields)
        if ok:
            return shipment
    logger.critical(f"❌ [LABEL] Purchased label could not be recorded: {fields}")
    return None


def _post_insert_refresh(store, carrier: Carrier, shipment: Dict[str, Any]) -> None:
    if shipment.get("label_url") or not shipment.get("label_object_id"):
        return
    looked = carrier.resolve_label_url(shipment["label_object_id"])
    if not looked or not looked.get("label_url"):
        logger.warning(f"[LABEL] post-insert refresh found no label_url for shipment={shipment['shipment_id']}")
        return
    updates = {k: looked[k] for k in ("label_url", "tracking_number", "tracking_url") if looked.get(k)}
    store.update_shipment(shipment["shipment_id"], updates)
    shipment.update(updates)
    logger.info(f"[LABEL] post-insert refresh stored label_url for shipment={shipment['shipment_id']}")


def _replay_idempotent(store, key: str, order_id: str) -> Optional[Dict[str, Any]]:
    record = store.get_idempotency_record(key)
    if not record:
        return None
    if record.get("order_id") != order_id:
        raise LabelConflictError("Idempotency-Key was already used for a different order")
    logger.info(f"[LABEL] Replaying stored result for Idempotency-Key on order={order_id}")
    return {**(record.get("raw") or {}), "replayed": True}


def purchase_label(store, carrier: Carrier, order_id: str, rate_id: str, *,
                   package_id: Optional[str] = None, package_name: Optional[str] = None,
                   idempotency_key: Optional[str] = None,
                   sleep: Callable[[float], None] = time.sleep,
                   notify: Callable[..., Any] = send_shipment_confirmation) -> Dict[str, Any]:
    """
    Buy a label for rate_id and record it against order_id.

    Raises before the carrier call: NotFoundError, LabelConflictError, ConfigError.
    Raises from the carrier call: LabelBlockedError (carrier messages), CarrierError.
    After the carrier accepted the purchase nothing raises; a missing label_url is
    recorded as-is and side effects are best-effort.
    """
    if idempotency_key and get_bool("label_idempotency_enforced", False):
        replay = _replay_idempotent(store, idempotency_key, order_id)
        if replay is not None:
            return replay

    # 1. guard: single purchased label per order (read-check-insert, no lock)
    order = _require_order(store, order_id)
    existing = store.find_purchased_shipment(order_id)
    if existing:
        raise LabelConflictError("A label has already been purchased for this order.")

    # 2. origin, destination, package, parcel
    ctx = build_context(store, order, package_id, package_name)

    # 3. the irreversible call
    try:
        label = carrier.purchase_label(rate_id, ctx)
    except CarrierError as e:
        if e.messages:
            raise LabelBlockedError(e.messages) from e
        raise
    logger.info(
        f"✅ [LABEL] purchased order={order_id} provider={carrier.name} tx={label.get('transaction_id')} "
        f"status={label.get('status')} has_url={bool(label.get('label_url'))}"
    )

    # 4-5. direct lookup, then bounded polling
    label = await_label_url(carrier, label, sleep=sleep)

    # 6. failed or blocked and still no document: abort without a row
    if is_blocking(label):
        messages = blocking_messages(label)
        logger.warning(f"[LABEL] blocked order={order_id} status={label.get('status')}: {messages}")
        raise LabelBlockedError(messages)

    # 7. record, even without a label_url
    shipment = _persist_shipment(store, _shipment_fields(order_id, rate_id, label, ctx))
    if shipment is None:
        return {**_purchase_response(None, label), "warnings": ["Label purchased but the shipment record could not be saved"]}

    shipment_id = shipment["shipment_id"]
    tasks = AfterCommit(f"[LABEL] order={order_id} shipment={shipment_id}")
    tasks.add("purchase event", store.add_shipment_event, shipment_id, "LABEL_PURCHASED",
              "Label purchased via admin UI",
              {"idempotency_key": idempotency_key, "rate_object_id": rate_id,
               "transaction_id": label.get("transaction_id")})
    # 8. last-resort refresh
    tasks.add("post-insert refresh", _post_insert_refresh, store, carrier, shipment)
    # 9. order status
    tasks.add("order status", store.update_order, order_id,
              {"order_status": "fulfilled", "shipping_status": "shipped"})
    # 10. confirmation email
    to_email = ctx["to_address"].get("email")
    if to_email:
        tasks.add("confirmation email", lambda: notify(to_email, order, shipment))
    results = tasks.run()

    refreshed = {k: shipment[k] for k in ("label_url", "tracking_number", "tracking_url") if shipment.get(k)}
    response = _purchase_response(shipment_id, {**label, **refreshed})
    failed = [k for k, ok in results.items() if not ok]
    if failed:
        response["warnings"] = [f"{k} failed" for k in failed]

    if idempotency_key:
        fire_and_log("[LABEL] save idempotency record", store.save_idempotency_record,
                     idempotency_key, order_id, response)
    return response


# =============== Void ===============

def void_shipment(store, carrier: Carrier, shipment_id: str) -> Dict[str, Any]:
    shipment = store.get_shipment(shipment_id)
    if not shipment:
        raise NotFoundError("Shipment not found")
    if shipment.get("status") != "purchased":
        raise InvalidStateError("Only purchased labels can be voided")
    if not shipment.get("label_object_id"):
        raise InvalidStateError("Shipment is missing the carrier transaction id")

    result = carrier.void_label(shipment["label_object_id"])
    logger.info(f"[LABEL] carrier voided shipment={shipment_id} tx={shipment['label_object_id']}")

    # The carrier has refunded the label: nothing after this point fails the request
    response: Dict[str, Any] = {"success": True, "status": "voided"}
    flipped = any(
        fire_and_log(f"[LABEL] mark voided shipment={shipment_id} (attempt {attempt})",
                     store.update_shipment, shipment_id, {"status": "voided"})[0]
        for attempt in (1, 2)
    )
    if not flipped:
        logger.critical(f"❌ [LABEL] Voided label still recorded as purchased: shipment={shipment_id}")
        response["warnings"] = ["Label voided but the shipment status could not be updated"]
    fire_and_log("[LABEL] void event", store.add_shipment_event, shipment_id, "LABEL_VOIDED",
                 "Label voided via admin UI", result)
    return response


# =============== Label URL recovery ===============

class LabelUnresolvedError(RuntimeError):
    pass


def ensure_label_url(store, carrier: Carrier, shipment_id: str) -> Dict[str, Any]:
    shipment = store.get_shipment(shipment_id)
    if not shipment:
        raise NotFoundError("Shipment not found")

    def _out(s):
        return {"label_url": s.get("label_url"), "tracking_number": s.get("tracking_number"),
                "tracking_url": s.get("tracking_url")}

    if shipment.get("label_url"):
        return _out(shipment)
    if not shipment.get("label_object_id"):
        raise InvalidStateError("No label_object_id on shipment")

    try:
        looked = carrier.resolve_label_url(shipment["label_object_id"])
    except CarrierError as e:
        logger.warning(f"[LABEL] ensure-url lookup failed shipment={shipment_id}: {e}")
        looked = None
    if not looked or not looked.get("label_url"):
        raise LabelUnresolvedError("Transaction missing label_url")

    updates = {k: looked[k] for k in ("label_url", "tracking_number", "tracking_url") if looked.get(k)}
    fire_and_log("[LABEL] ensure-url persist", store.update_shipment, shipment_id, updates)
    return _out({**shipment, **updates})


def list_shipments_with_labels(store, carrier: Optional[Carrier], order_id: str) -> List[Dict[str, Any]]:
    """Newest first; label URLs re-resolved because carrier URLs expire."""
    out = []
    for s in store.list_shipments(order_id):
        if carrier is None or not s.get("label_object_id"):
            out.append(s)
            continue
        ok, looked = fire_and_log(f"[SHIPMENTS] refresh label shipment={s['shipment_id']}",
                                  carrier.resolve_label_url, s["label_object_id"])
        latest = (looked or {}).get("label_url") if ok else None
        if latest and not s.get("label_url"):
            fire_and_log(f"[SHIPMENTS] persist label_url shipment={s['shipment_id']}",
                         store.update_shipment, s["shipment_id"], {"label_url": latest})
        out.append({**s, "label_url": latest or s.get("label_url")})
    return out


# =============== Manual shipments ===============

MANUAL_UPDATE_FIELDS = ("status", "tracking_url", "tracking_number", "carrier", "service")


def create_manual_shipment(store, order_id: str, body: Dict[str, Any],
                           notify: Callable[..., Any] = send_shipment_confirmation) -> Dict[str, Any]:
    """Record a shipment bought outside this system (carrier + tracking number)."""
    order = _require_order(store, order_id)

    try:
        origin = load_origin()
    except ConfigError:
        origin = {}
    destination = resolve_destination(order)
    package = store.get_default_package() or {}
    parcel = build_parcel(order, package)

    fields = {
        "order_id": order_id,
        "status": body.get("status") or "shipped",
        "carrier": body["carrier"],
        "service": body.get("service") or None,
        "tracking_number": body["tracking_number"],
        "tracking_url": body.get("tracking_url") or None,
        **address_snapshot("to", destination),
        **address_snapshot("from", origin),
        "package_name": package.get("name") or "Manual",
        "weight_g": parcel["weight_g"],
        "length_cm": parcel["length_cm"],
        "width_cm": parcel["width_cm"],
        "height_cm": parcel["height_cm"],
    }
    shipment = store.create_shipment(fields)
    shipment_id = shipment["shipment_id"]

    tasks = AfterCommit(f"[SHIPMENTS] manual order={order_id} shipment={shipment_id}")
    tasks.add("order status", store.update_order, order_id,
              {"order_status": "fulfilled", "shipping_status": "shipped"})
    tasks.add("event", store.add_shipment_event, shipment_id, "MANUAL_SHIPMENT_CREATED",
              "Manual shipment recorded via admin UI", body)
    if body.get("email", True) and destination.get("email"):
        tasks.add("confirmation email", lambda: notify(destination["email"], order, shipment))
    tasks.run()
    return shipment


def _send_update_email(store, order_id: Optional[str], shipment: Dict[str, Any],
                       notify: Callable[..., Any]) -> None:
    order = (store.get_order(order_id) if order_id else None) or {}
    to_email = ((order.get("customer") or {}).get("email")) or shipment.get("to_email")
    if not to_email:
        logger.info(f"[SHIPMENTS] no customer email for shipment={shipment['shipment_id']}; update not sent")
        return
    notify(to_email, order, shipment)


def update_manual_shipment(store, shipment_id: str, body: Dict[str, Any],
                           notify: Callable[..., Any] = send_shipment_update) -> Dict[str, Any]:
    shipment = store.get_shipment(shipment_id)
    if not shipment:
        raise NotFoundError("Shipment not found")

    updates = {k: body[k] for k in MANUAL_UPDATE_FIELDS if body.get(k) not in (None, "")}
    if not updates:
        raise InvalidStateError("Nothing to update")

    store.update_shipment(shipment_id, updates)
    shipment = {**shipment, **updates}
    order_id = shipment.get("order_id")

    tasks = AfterCommit(f"[SHIPMENTS] update shipment={shipment_id}")
    if updates.get("status") == "delivered" and order_id:
        tasks.add("order delivered", store.update_order, order_id,
                  {"shipping_status": "delivered", "order_status": "fulfilled"})
    tasks.add("event", store.add_shipment_event, shipment_id, "MANUAL_SHIPMENT_UPDATED",
              "Shipment updated via admin UI", body)
    if body.get("email", True):
        tasks.add("update email", _send_update_email, store, order_id, shipment, notify)
    tasks.run()
    return shipment


def delete_shipment(store, shipment_id: str) -> None:
    if not store.get_shipment(shipment_id):
        raise NotFoundError("Shipment not found")
    store.delete_shipment(shipment_id)
    logger.info(f"[SHIPMENTS] deleted shipment={shipment_id} with its events")
