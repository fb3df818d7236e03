# packages_api.py
# Package presets (box definitions) used to build parcels.
# Routes:
#   GET    /shipping/packages
#   POST   /admin/packages                          {name, lengthCm, widthCm, heightCm, weightG, isDefault?}
#   DELETE /admin/packages/{packageId}
#   POST   /admin/packages/{packageId}/default

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Dict

from fulfillment_store import NotFoundError, StoreError, get_store
from http_utils import camelize, error, json_body, path_param, require_fields, resp

logger = logging.getLogger()
logger.setLevel(logging.INFO)

DIMENSION_FIELDS = {
    "lengthCm": "length_cm",
    "widthCm": "width_cm",
    "heightCm": "height_cm",
    "weightG": "weight_g",
}


def _number(name: str, value: Any) -> Decimal:
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValueError(f"{name} must be a number")
    if d < 0:
        raise ValueError(f"{name} must not be negative")
    return d


def package_fields(body: Dict[str, Any]) -> Dict[str, Any]:
    """Validated store fields from a create body (camelCase or snake_case keys)."""
    name = str(body.get("name") or "").strip()
    if not name:
        raise ValueError("Missing required field(s): name")
    fields: Dict[str, Any] = {"name": name}
    for camel_key, snake_key in DIMENSION_FIELDS.items():
        raw = body.get(camel_key, body.get(snake_key))
        if raw in (None, ""):
            raise ValueError(f"Missing required field(s): {camel_key}")
        fields[snake_key] = _number(camel_key, raw)
    return fields


def _list(_event):
    return resp(200, {"packages": camelize(get_store().list_packages())})


def _create(event):
    body = json_body(event)
    store = get_store()
    pkg = store.create_package(package_fields(body))
    if body.get("isDefault") or body.get("is_default"):
        store.set_default_package(pkg["package_id"])
        pkg["is_default"] = True
    logger.info(f"[PACKAGES] created {pkg['package_id']} name={pkg['name']}")
    return resp(201, camelize(pkg))


def _delete(event):
    package_id = path_param(event, "packageId")
    err = require_fields({"packageId": package_id}, ["packageId"])
    if err:
        return error(400, err)
    store = get_store()
    if not store.get_package(package_id):
        raise NotFoundError("Package not found")
    store.delete_package(package_id)
    logger.info(f"[PACKAGES] deleted {package_id}")
    return resp(200, {"success": True})


def _set_default(event):
    package_id = path_param(event, "packageId")
    err = require_fields({"packageId": package_id}, ["packageId"])
    if err:
        return error(400, err)
    get_store().set_default_package(package_id)
    return resp(200, {"success": True, "packageId": package_id})


ROUTES = {
    ("/shipping/packages", "GET"): _list,
    ("/admin/packages", "POST"): _create,
    ("/admin/packages/{packageId}", "DELETE"): _delete,
    ("/admin/packages/{packageId}/default", "POST"): _set_default,
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
    except StoreError as e:
        logger.warning(f"[PACKAGES] {method} {resource}: {e}")
        return error(409, str(e))
    except Exception as e:
        logger.error(f"[PACKAGES] {method} {resource} failed: {e}", exc_info=True)
        return error(500, "Failed to process package request")
