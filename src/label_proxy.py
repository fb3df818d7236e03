# label_proxy.py
# GET /shipping/label-proxy?url=...
# Fetches a carrier label document (or decodes an inline data: URL) and returns
# it with permissive CORS so the admin page can render and print it.

import re
import base64
import logging
from typing import Any, Dict, List, Optional, Pattern, Tuple
from urllib.parse import unquote, urlparse

import requests

from config_loader import ConfigError, get_value, http_timeout
from http_utils import error, header, qs, resp

logger = logging.getLogger()
logger.setLevel(logging.INFO)

ALLOWED_HOST_PATTERNS = [
    re.compile(r"shippo", re.IGNORECASE),
    re.compile(r"amazonaws\.com$", re.IGNORECASE),
    re.compile(r"shipengine", re.IGNORECASE),
    re.compile(r"shipstation", re.IGNORECASE),
]

DEFAULT_CONTENT_TYPE = "application/pdf"

_DATA_URL = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(;[^;,]*)*?)(?P<b64>;base64)?,(?P<data>.*)$", re.DOTALL)


class LabelProxyError(Exception):
    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status


def _extra_patterns() -> List[Pattern]:
    """Additional host regexes from app-config `label_proxy_allowed_hosts` (comma separated)."""
    try:
        raw = get_value("label_proxy_allowed_hosts", default="") or ""
    except ConfigError as e:
        logger.warning(f"[LABEL-PROXY] config unavailable, using built-in hosts only: {e}")
        return []
    out = []
    for part in str(raw).split(","):
        part = part.strip()
        if part:
            out.append(re.compile(part, re.IGNORECASE))
    return out


def host_allowed(hostname: str, patterns: Optional[List[Pattern]] = None) -> bool:
    if not hostname:
        return False
    patterns = ALLOWED_HOST_PATTERNS + (patterns if patterns is not None else _extra_patterns())
    return any(p.search(hostname) for p in patterns)


def decode_data_url(url: str) -> Tuple[bytes, str]:
    m = _DATA_URL.match(url)
    if not m:
        raise LabelProxyError(400, "Invalid data url")
    mime = m.group("mime") or "text/plain"
    data = m.group("data")
    try:
        if m.group("b64"):
            return base64.b64decode(unquote(data), validate=False), mime
        return unquote(data).encode("utf-8"), mime
    except (ValueError, TypeError):
        raise LabelProxyError(400, "Invalid data url")


def resolve_target(url: Optional[str], event: Dict[str, Any]) -> str:
    """Absolute https URL to fetch. Relative paths are same-origin and always allowed."""
    if not url:
        raise LabelProxyError(400, "Missing url")
    if url.startswith("/") and not url.startswith("//"):
        host = header(event, "Host")
        if not host:
            raise LabelProxyError(400, "Invalid url")
        return f"https://{host}{url}"

    try:
        target = urlparse(url)
    except ValueError:
        raise LabelProxyError(400, "Invalid url")
    if not target.scheme or not target.netloc:
        raise LabelProxyError(400, "Invalid url")
    if target.scheme != "https":
        raise LabelProxyError(400, "Only https urls are allowed")
    if not host_allowed(target.hostname or ""):
        raise LabelProxyError(403, "Host not allowed")
    return url


def fetch_label(url: Optional[str], event: Dict[str, Any]) -> Tuple[bytes, str]:
    """(document bytes, content type)"""
    if url and url.startswith("data:"):
        return decode_data_url(url)

    target = resolve_target(url, event)
    try:
        upstream = requests.get(target, timeout=http_timeout())
    except requests.RequestException as e:
        logger.error(f"[LABEL-PROXY] fetch failed for {urlparse(target).hostname}: {e}")
        raise LabelProxyError(500, "Failed to fetch label")
    if not upstream.ok:
        logger.warning(f"[LABEL-PROXY] upstream {upstream.status_code} for {urlparse(target).hostname}")
        raise LabelProxyError(502, f"Upstream error: {upstream.status_code}")
    return upstream.content, upstream.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE


def lambda_handler(event, _context):
    method = (event.get("httpMethod") or "").upper()
    if method == "OPTIONS":
        return resp(200, {"ok": True})
    if method != "GET":
        return error(405, "Method not allowed")

    try:
        content, content_type = fetch_label(qs(event, "url"), event)
    except LabelProxyError as e:
        return error(e.status, str(e))

    return {
        "statusCode": 200,
        "headers": {
            "Content-Type": content_type,
            "Cache-Control": "no-store",
            "Access-Control-Allow-Origin": "*",
        },
        "body": base64.b64encode(content).decode("ascii"),
        "isBase64Encoded": True,
    }
