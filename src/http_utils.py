# http_utils.py
# API Gateway (REST proxy) request/response helpers shared by the handlers.

import json
import base64
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "OPTIONS,GET,POST,PATCH,DELETE",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Idempotency-Key, X-Idempotency-Key, X-Shippo-Secret, Stripe-Signature",
}


class DecimalEncoder(json.JSONEncoder):
    def default(self, o):
        if isinstance(o, Decimal):
            return int(o) if o == o.to_integral_value() else float(o)
        return super().default(o)


def resp(status: int, body: Any, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        "statusCode": status,
        "headers": {"Content-Type": "application/json", **CORS_HEADERS, **(headers or {})},
        "body": json.dumps(body, cls=DecimalEncoder),
    }


def error(status: int, message: str, **extra) -> Dict[str, Any]:
    return resp(status, {"error": message, **extra})


def raw_body(event: Dict[str, Any]) -> str:
    raw = event.get("body") or ""
    if event.get("isBase64Encoded") and raw:
        raw = base64.b64decode(raw).decode("utf-8")
    return raw


def json_body(event: Dict[str, Any]) -> Dict[str, Any]:
    """Parsed JSON object body; raises ValueError on bad JSON or a non-object body."""
    raw = raw_body(event) or "{}"
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON body: {e}")
    if not isinstance(data, dict):
        raise ValueError("JSON body must be an object")
    return data


def header(event: Dict[str, Any], name: str) -> Optional[str]:
    # API Gateway keeps the sender's casing
    want = name.lower()
    for k, v in (event.get("headers") or {}).items():
        if k.lower() == want and v not in (None, ""):
            return v
    return None


def qs(event: Dict[str, Any], name: str, default: Optional[str] = None) -> Optional[str]:
    return (event.get("queryStringParameters") or {}).get(name, default)


def path_param(event: Dict[str, Any], name: str) -> Optional[str]:
    return (event.get("pathParameters") or {}).get(name)


def require_fields(obj: Dict[str, Any], fields: List[str]) -> Optional[str]:
    missing = [f for f in fields if obj.get(f) in (None, "", [])]
    if missing:
        return f"Missing required field(s): {', '.join(missing)}"
    return None


def camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(p[:1].upper() + p[1:] for p in rest)


def camelize(obj: Union[Dict[str, Any], List[Any], Any]) -> Any:
    """Recursively rename snake_case dict keys to camelCase for API responses."""
    if isinstance(obj, dict):
        return {camel(k): camelize(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [camelize(v) for v in obj]
    return obj
