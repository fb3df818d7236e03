# shipments_api.py
# Admin shipment listing and manual shipments.
# Routes:
#   GET    /admin/orders/{orderId}/shipments
#   POST   /admin/orders/{orderId}/shipments     {carrier, trackingNumber, service?, trackingUrl?, status?, email?}
#   PATCH  /admin/shipments/{shipmentId}          {status?, trackingNumber?, trackingUrl?, carrier?, service?, email?}
#   DELETE /admin/shipments/{shipmentId}

import logging
from typing import Any, Dict

from carriers import get_carrier
from config_loader import ConfigError
from fulfillment_store import NotFoundError, get_store
from http_utils import camelize, error, json_body, path_param, qs, require_fields, resp
from label_purchase import (
    InvalidStateError,
    create_manual_shipment,
    delete_shipment,
    list_shipments_with_labels,
    update_manual_shipment,
)

logger = logging.getLogger()
logger.setLevel(logging.INFO)

SHIPMENT_STATUSES = ("shipped", "in_transit", "delivered", "returned", "cancelled", "purchased", "error")

_BODY_KEYS = {
    "trackingNumber": "tracking_number",
    "trackingUrl": "tracking_url",
}


def _snake_body(body: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(body)
    for camel_key, snake_key in _BODY_KEYS.items():
        if camel_key in out and snake_key not in out:
            out[snake_key] = out.pop(camel_key)
    return out


def _check_status(body: Dict[str, Any]) -> None:
    status = body.get("status")
    if status and status not in SHIPMENT_STATUSES:
        raise ValueError(f"Invalid status '{status}'")


def _list(event):
    order_id = path_param(event, "orderId")
    if not order_id:
        return error(400, "Missing orderId")
    carrier = None
    if (qs(event, "refresh", "true") or "").lower() != "false":
        try:
            carrier = get_carrier()
        except ConfigError as e:
            # listing still works without credentials, just without fresh label URLs
            logger.warning(f"[SHIPMENTS] no carrier for label refresh: {e}")
    shipments = list_shipments_with_labels(get_store(), carrier, order_id)
    return resp(200, {"shipments": camelize(shipments)})


def _create(event):
    order_id = path_param(event, "orderId")
    body = _snake_body(json_body(event))
    err = require_fields(body, ["carrier", "tracking_number"])
    if err:
        return error(400, err)
    _check_status(body)
    shipment = create_manual_shipment(get_store(), order_id, body)
    return resp(201, camelize(shipment))


def _update(event):
    body = _snake_body(json_body(event))
    _check_status(body)
    shipment = update_manual_shipment(get_store(), path_param(event, "shipmentId"), body)
    return resp(200, camelize(shipment))


def _delete(event):
    delete_shipment(get_store(), path_param(event, "shipmentId"))
    return resp(200, {"success": True})


ROUTES = {
    ("/admin/orders/{orderId}/shipments", "GET"): _list,
    ("/admin/orders/{orderId}/shipments", "POST"): _create,
    ("/admin/shipments/{shipmentId}", "PATCH"): _update,
    ("/admin/shipments/{shipmentId}", "DELETE"): _delete,
}


def lambda_handler(event, _context):
    resource = event.get("resource") or event.get("path")
    method = (event.get("httpMethod") or "").upper()

    if method == "OPTIONS":
        return resp(200, {"ok": True})

    handler = ROUTES.get((resource, method))
    if not handler:
        return error(405, "Method not allowed")

    try:
        return handler(event)
    except ValueError as e:
        return error(400, str(e))
    except NotFoundError as e:
        return error(404, str(e))
    except InvalidStateError as e:
        return error(400, str(e))
    except Exception as e:
        logger.error(f"[SHIPMENTS] {method} {resource} failed: {e}", exc_info=True)
        return error(500, "Failed to process shipment request")
