# email_service.py
# Shipment notices sent through SES v2. Sender settings come from app-config.

import html as html_lib
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from config_loader import ConfigError, get_value, resolved_source

logger = logging.getLogger(__name__)


class EmailError(RuntimeError):
    pass


def _sender_settings() -> Dict[str, Any]:
    """ses_region, ses_from_email and ses_from_name are mandatory; the rest are optional."""
    settings = {k: get_value(k, required=True) for k in ("ses_region", "ses_from_email", "ses_from_name")}
    for k in ("ses_reply_to_default", "ses_configuration_set"):
        settings[k] = get_value(k)
    return settings


def _format_sender(name: str, address: str) -> str:
    address = (address or "").strip()
    if not address:
        raise ConfigError("ses_from_email is blank")
    # header injection guard
    name = " ".join((name or "").split())
    return f"{name} <{address}>" if name else address


def _build_ses_client(region: str):
    return boto3.client("sesv2", region_name=region)


def _simple_content(subject: str, html: Optional[str], text: Optional[str]) -> Dict[str, Any]:
    body: Dict[str, Any] = {}
    if html:
        body["Html"] = {"Data": html}
    if text:
        body["Text"] = {"Data": text}
    return {"Simple": {"Subject": {"Data": subject}, "Body": body}}


def send_email(
    to: List[str],
    subject: str,
    html: Optional[str],
    text: Optional[str] = None,
    reply_to: Optional[List[str]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    """
    Send one message through SES v2 and return the SES response.

    reply_to falls back to ses_reply_to_default; tags become SES EmailTags.
    Raises EmailError for an unusable message or an SES rejection.
    """
    if not to:
        raise EmailError("No recipient")
    if not subject:
        raise EmailError("Missing subject")
    if not (html or text):
        raise EmailError("Empty message body")

    settings = _sender_settings()
    sender = _format_sender(settings["ses_from_name"], settings["ses_from_email"])

    replies = [a.strip() for a in (reply_to or []) if a and a.strip()]
    if not replies and settings["ses_reply_to_default"]:
        replies = [settings["ses_reply_to_default"]]

    request: Dict[str, Any] = {
        "FromEmailAddress": sender,
        "Destination": {"ToAddresses": list(to)},
        "Content": _simple_content(subject, html, text),
    }
    if replies:
        request["ReplyToAddresses"] = replies
    if settings["ses_configuration_set"]:
        request["ConfigurationSetName"] = settings["ses_configuration_set"]
    if tags:
        request["EmailTags"] = [{"Name": k, "Value": v} for k, v in tags.items()]

    logger.info(f"[EMAIL] SES send to={','.join(to)} env={resolved_source().get('environment')}")
    try:
        result = _build_ses_client(settings["ses_region"]).send_email(**request)
    except ClientError as e:
        err = e.response.get("Error", {})
        code, message = err.get("Code", "Unknown"), err.get("Message", str(e))
        logger.error(f"❌ [EMAIL] SES rejected message: {code} {message}")
        raise EmailError(f"SES error: {code} - {message}") from e
    logger.info(f"[EMAIL] SES accepted MessageId={result.get('MessageId')}")
    return result


# ---------------- Shipment notices ----------------

def _store_name() -> str:
    return str(get_value("store_display_name", default="") or get_value("ses_from_name", default="") or "Our store")


def _shipment_lines(shipment: Dict[str, Any]) -> List[str]:
    lines = []
    carrier = " ".join(p for p in (shipment.get("carrier"), shipment.get("service")) if p)
    if carrier:
        lines.append(f"Carrier: {carrier}")
    if shipment.get("tracking_number"):
        lines.append(f"Tracking number: {shipment['tracking_number']}")
    if shipment.get("tracking_url"):
        lines.append(f"Track your package: {shipment['tracking_url']}")
    return lines


def _render(heading: str, intro: str, lines: List[str]) -> Dict[str, str]:
    text = "\n".join([heading, "", intro, ""] + lines)
    items = "".join(f"<li>{html_lib.escape(l)}</li>" for l in lines)
    html = (
        f"<h2>{html_lib.escape(heading)}</h2>"
        f"<p>{html_lib.escape(intro)}</p>"
        f"<ul>{items}</ul>"
    )
    return {"text": text, "html": html}


def build_shipment_confirmation(order: Dict[str, Any], shipment: Dict[str, Any]) -> Dict[str, str]:
    store = _store_name()
    order_ref = order.get("order_number") or order.get("order_id") or shipment.get("order_id")
    body = _render(
        "Your order has shipped",
        f"Good news: {store} has shipped order {order_ref}.",
        _shipment_lines(shipment),
    )
    return {"subject": f"Your {store} order {order_ref} has shipped", **body}


def build_shipment_update(order: Dict[str, Any], shipment: Dict[str, Any]) -> Dict[str, str]:
    store = _store_name()
    order_ref = order.get("order_number") or order.get("order_id") or shipment.get("order_id")
    status = str(shipment.get("status") or "updated").replace("_", " ")
    body = _render(
        "Shipment update",
        f"The shipment for order {order_ref} is now: {status}.",
        _shipment_lines(shipment),
    )
    return {"subject": f"Update on your {store} order {order_ref}", **body}


def send_shipment_confirmation(to_email: str, order: Dict[str, Any], shipment: Dict[str, Any]) -> Dict[str, Any]:
    msg = build_shipment_confirmation(order, shipment)
    return send_email([to_email], msg["subject"], msg["html"], msg["text"],
                      tags={"kind": "shipment_confirmation"})


def send_shipment_update(to_email: str, order: Dict[str, Any], shipment: Dict[str, Any]) -> Dict[str, Any]:
    msg = build_shipment_update(order, shipment)
    return send_email([to_email], msg["subject"], msg["html"], msg["text"],
                      tags={"kind": "shipment_update"})
