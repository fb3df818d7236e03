# shipment_context.py
# Resolves everything a rate quote or label purchase needs for one order:
# origin (store settings), destination (order), package preset and parcel.
#
# Address shape used throughout:
#   {name, phone, email, address1, address2, city, state, postal_code, country}
# Parcel shape:
#   {length_cm, width_cm, height_cm, weight_g}

import logging
from typing import Any, Dict, Optional

from config_loader import ConfigError, load_config
from parcel_weight import estimate_parcel_weight_g

logger = logging.getLogger(__name__)

ORIGIN_FIELDS = ("name", "email", "phone", "address1", "address2", "city", "state", "postal_code", "country")

DEFAULT_LENGTH_CM = 10
DEFAULT_WIDTH_CM = 10
DEFAULT_HEIGHT_CM = 5


def _s(v: Any) -> str:
    return "" if v is None else str(v).strip()


def _or_none(v: Any) -> Optional[str]:
    return _s(v) or None


def load_origin(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Store ship-from address from the shipping_origin_* config keys."""
    cfg = cfg if cfg is not None else load_config()
    values = {f: cfg.get(f"shipping_origin_{f}") for f in ORIGIN_FIELDS}
    if not any(_s(v) for v in values.values()):
        raise ConfigError("Store settings not configured")
    return {
        "name": _or_none(values["name"]),
        "email": _or_none(values["email"]),
        "phone": _or_none(values["phone"]),
        "address1": _s(values["address1"]),
        "address2": _or_none(values["address2"]),
        "city": _s(values["city"]),
        "state": _s(values["state"]),
        "postal_code": _s(values["postal_code"]),
        "country": _s(values["country"]) or "US",
    }


def customer_full_name(order: Dict[str, Any]) -> Optional[str]:
    customer = order.get("customer") or {}
    name = " ".join(p for p in (_s(customer.get("first_name")), _s(customer.get("last_name"))) if p)
    return name or None


def resolve_destination(order: Dict[str, Any]) -> Dict[str, Any]:
    """
    Ship-to address: the order's shipping_details when present, else its billing_* fields.
    Missing fields become "" so the carrier does the validation; country defaults to US.
    Name: explicit shipping name -> customer full name -> billing name -> None.
    """
    customer = order.get("customer") or {}
    sd = order.get("shipping_details")

    if isinstance(sd, dict) and sd:
        name = _or_none(sd.get("name")) or customer_full_name(order) or _or_none(order.get("billing_name"))
        return {
            "name": name,
            "email": _or_none(customer.get("email")),
            "phone": _or_none(customer.get("phone")),
            "address1": _s(sd.get("address_line1")),
            "address2": _or_none(sd.get("address_line2")),
            "city": _s(sd.get("city")),
            "state": _s(sd.get("state")),
            "postal_code": _s(sd.get("postal_code")),
            "country": _s(sd.get("country")) or "US",
        }

    name = customer_full_name(order) or _or_none(order.get("billing_name"))
    return {
        "name": name,
        "email": _or_none(customer.get("email")),
        "phone": _or_none(customer.get("phone")),
        "address1": _s(order.get("billing_address_line1")),
        "address2": _or_none(order.get("billing_address_line2")),
        "city": _s(order.get("billing_city")),
        "state": _s(order.get("billing_state")),
        "postal_code": _s(order.get("billing_postal_code")),
        "country": _s(order.get("billing_country")) or "US",
    }


def resolve_package(store, package_id: Optional[str] = None,
                    package_name: Optional[str] = None) -> Dict[str, Any]:
    """Explicit package (id, then name) -> flagged default -> ConfigError."""
    pkg = None
    if package_id:
        pkg = store.get_package(package_id)
    if not pkg and package_name:
        pkg = store.find_package_by_name(package_name)
    if not pkg:
        pkg = store.get_default_package()
    if not pkg:
        raise ConfigError("No shipping package configured. Create one in admin settings.")
    return pkg


def _dim(v: Any, default: float) -> float:
    try:
        n = float(v)
    except (TypeError, ValueError):
        return float(default)
    return n if n > 0 else float(default)


def build_parcel(order: Dict[str, Any], package: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "length_cm": _dim(package.get("length_cm"), DEFAULT_LENGTH_CM),
        "width_cm": _dim(package.get("width_cm"), DEFAULT_WIDTH_CM),
        "height_cm": _dim(package.get("height_cm"), DEFAULT_HEIGHT_CM),
        "weight_g": estimate_parcel_weight_g(order.get("line_items") or [], package),
    }


def build_context(store, order: Dict[str, Any], package_id: Optional[str] = None,
                  package_name: Optional[str] = None,
                  cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    origin = load_origin(cfg)
    destination = resolve_destination(order)
    package = resolve_package(store, package_id, package_name)
    parcel = build_parcel(order, package)
    logger.info(
        f"[CONTEXT] order={order.get('order_id')} package={package.get('name')} "
        f"weight_g={parcel['weight_g']:.0f} to={destination.get('postal_code')}/{destination.get('country')}"
    )
    return {
        "from_address": origin,
        "to_address": destination,
        "package": package,
        "parcel": parcel,
    }


def address_snapshot(prefix: str, addr: Dict[str, Any]) -> Dict[str, Any]:
    """Flatten an address into {prefix}_name, {prefix}_address1, ... for a shipment row."""
    return {f"{prefix}_{f}": addr.get(f) for f in ORIGIN_FIELDS}
