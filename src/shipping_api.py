# shipping_api.py
# Admin shipping API: rates, label purchase, void, label-url recovery, address validation.
# Routes:
#   POST /shipping/rates                 {orderId, packageId?, packageName?}
#   POST /shipping/labels                {orderId, rateObjectId, packageId?, packageName?}  [Idempotency-Key]
#   POST /shipping/labels/void           {shipmentId}
#   POST /shipping/labels/ensure-url     {shipmentId}
#   POST /shipping/validate-address      {name?, address1, address2?, city, state, postal_code, country}

import logging
from typing import Any, Dict

from carriers import CarrierError, get_carrier
from config_loader import ConfigError
from fulfillment_store import NotFoundError, StoreError, get_store
from http_utils import camelize, error, header, json_body, require_fields, resp
from label_purchase import (
    InvalidStateError,
    LabelBlockedError,
    LabelConflictError,
    LabelUnresolvedError,
    ensure_label_url,
    get_rates_for_order,
    purchase_label,
    void_shipment,
)

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _rate_out(r: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "rateObjectId": r.get("rate_id"),
        "carrier": r.get("carrier"),
        "service": r.get("service"),
        "amountCents": r.get("amount_cents"),
        "currency": r.get("currency"),
        "estimatedDays": r.get("estimated_days"),
    }


# =============== Route handlers ===============

def _handle_rates(event):
    body = json_body(event)
    err = require_fields(body, ["orderId"])
    if err:
        return error(400, err)
    carrier = get_carrier()
    rates = get_rates_for_order(get_store(), carrier, body["orderId"],
                                body.get("packageId"), body.get("packageName"))
    return resp(200, {"rates": [_rate_out(r) for r in rates], "provider": carrier.name})


def _handle_purchase(event):
    body = json_body(event)
    err = require_fields(body, ["orderId", "rateObjectId"])
    if err:
        return error(400, err)
    idem = header(event, "Idempotency-Key") or header(event, "X-Idempotency-Key")
    result = purchase_label(
        get_store(),
        get_carrier(),
        body["orderId"],
        body["rateObjectId"],
        package_id=body.get("packageId"),
        package_name=body.get("packageName"),
        idempotency_key=idem,
    )
    return resp(200, camelize(result))


def _handle_void(event):
    body = json_body(event)
    err = require_fields(body, ["shipmentId"])
    if err:
        return error(400, err)
    return resp(200, void_shipment(get_store(), get_carrier(), body["shipmentId"]))


def _handle_ensure_url(event):
    body = json_body(event)
    err = require_fields(body, ["shipmentId"])
    if err:
        return error(400, err)
    try:
        out = ensure_label_url(get_store(), get_carrier(), body["shipmentId"])
    except LabelUnresolvedError as e:
        return error(424, str(e))
    return resp(200, camelize(out))


def _handle_validate_address(event):
    body = json_body(event)
    addr = {
        "name": body.get("name"),
        "address1": body.get("address1") or body.get("address_line1") or "",
        "address2": body.get("address2") or body.get("address_line2"),
        "city": body.get("city") or "",
        "state": body.get("state") or "",
        "postal_code": body.get("postal_code") or body.get("postalCode") or "",
        "country": body.get("country") or "US",
    }
    err = require_fields(addr, ["address1", "city", "postal_code"])
    if err:
        return error(400, err)
    return resp(200, camelize(get_carrier().validate_address(addr)))


ROUTES = {
    ("/shipping/rates", "POST"): ("get rates", _handle_rates),
    ("/shipping/labels", "POST"): ("purchase label", _handle_purchase),
    ("/shipping/labels/void", "POST"): ("void label", _handle_void),
    ("/shipping/labels/ensure-url", "POST"): ("resolve label URL", _handle_ensure_url),
    ("/shipping/validate-address", "POST"): ("validate address", _handle_validate_address),
}


# =============== Lambda entry ===============

def lambda_handler(event, _context):
    resource = event.get("resource") or event.get("path")
    method = (event.get("httpMethod") or "").upper()

    if method == "OPTIONS":
        return resp(200, {"ok": True})

    route = ROUTES.get((resource, method))
    if not route:
        return error(405, "Method not allowed")
    action, handler = route

    try:
        return handler(event)
    except ValueError as e:
        return error(400, str(e))
    except NotFoundError as e:
        return error(404, str(e))
    except LabelConflictError as e:
        return error(409, str(e))
    except LabelBlockedError as e:
        return error(402, "Carrier blocked the label purchase", messages=e.messages)
    except InvalidStateError as e:
        return error(400, str(e))
    except ConfigError as e:
        logger.error(f"[SHIPPING] {action}: configuration error: {e}")
        return error(400, str(e))
    except CarrierError as e:
        logger.error(f"[SHIPPING] {action}: carrier error {e.status_code}: {e}")
        return error(502, str(e), messages=e.messages)
    except StoreError as e:
        logger.error(f"[SHIPPING] {action}: store error: {e}", exc_info=True)
        return error(500, f"Failed to {action}")
    except Exception as e:
        logger.error(f"[SHIPPING] {action} failed: {e}", exc_info=True)
        return error(500, f"Failed to {action}")
