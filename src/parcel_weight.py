# parcel_weight.py
# Parcel weight estimation from order line items + package tare.

from typing import Any, Dict, Iterable, Optional

ASSUMED_ITEM_WEIGHT_G = 200

# grams per unit
_UNIT_TO_GRAMS = {
    "g": 1.0,
    "kg": 1000.0,
    "oz": 28.3495,
    "lb": 453.592,
}


def to_grams(weight: Any, unit: Optional[str] = "g") -> float:
    """Convert a weight in `unit` to grams. Unknown units and bad values yield 0."""
    try:
        value = float(weight)
    except (TypeError, ValueError):
        return 0.0
    factor = _UNIT_TO_GRAMS.get((unit or "g").strip().lower())
    if factor is None:
        return 0.0
    return value * factor


def _positive_weight_g(record: Optional[Dict[str, Any]]) -> float:
    # Accepts {"weight_g": ...} or {"weight": ..., "weight_unit": ...}
    if not isinstance(record, dict):
        return 0.0
    if record.get("weight_g") not in (None, ""):
        grams = to_grams(record.get("weight_g"), "g")
    elif record.get("weight") not in (None, ""):
        grams = to_grams(record.get("weight"), record.get("weight_unit") or "g")
    else:
        grams = 0.0
    return grams if grams > 0 else 0.0


def item_weight_g(line_item: Dict[str, Any]) -> float:
    """
    Per-unit weight for a line item: variant weight, then product weight,
    then ASSUMED_ITEM_WEIGHT_G when neither is set or positive.
    """
    return (
        _positive_weight_g(line_item.get("variant"))
        or _positive_weight_g(line_item.get("product"))
        or float(ASSUMED_ITEM_WEIGHT_G)
    )


def _quantity(line_item: Dict[str, Any]) -> int:
    try:
        return max(0, int(line_item.get("quantity") or 0))
    except (TypeError, ValueError):
        return 0


def estimate_parcel_weight_g(line_items: Iterable[Dict[str, Any]],
                             package: Optional[Dict[str, Any]] = None) -> float:
    """
    Total parcel weight in grams: sum(item weight * quantity) + package tare,
    floored at 1 gram since carriers reject zero weights.
    """
    items_weight = sum(item_weight_g(li) * _quantity(li) for li in (line_items or []))
    tare = to_grams((package or {}).get("weight_g") or 0, "g")
    return max(1.0, items_weight + tare)
