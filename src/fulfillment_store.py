# fulfillment_store.py
# DynamoDB persistence for the fulfillment flow.
#
# Tables (names come from strict env vars):
#   SHIPMENTS_TABLE        HASH shipment_id
#                          GSIs: order_id-index, label_object_id-index, tracking_number-index
#   SHIPMENT_EVENTS_TABLE  HASH shipment_id, RANGE event_id ("<occurred_at>#<uuid>")
#   WEBHOOK_EVENTS_TABLE   HASH source, RANGE external_event_id
#   PACKAGES_TABLE         HASH package_id   (plus one "__default__" marker row, never listed)
#   ORDERS_TABLE           HASH order_id      GSI: stripe_payment_intent_id-index
#   INVOICES_TABLE         HASH invoice_id
#   IDEMPOTENCY_TABLE      HASH idempotency_key

import json
import uuid
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from config_loader import dynamodb_resource, require_env, to_jsonable

logger = logging.getLogger(__name__)

TABLE_ENV_KEYS = {
    "shipments": "SHIPMENTS_TABLE",
    "shipment_events": "SHIPMENT_EVENTS_TABLE",
    "webhook_events": "WEBHOOK_EVENTS_TABLE",
    "packages": "PACKAGES_TABLE",
    "orders": "ORDERS_TABLE",
    "invoices": "INVOICES_TABLE",
    "idempotency": "IDEMPOTENCY_TABLE",
}

# versioned row that serializes set-default transactions
DEFAULT_MARKER_ID = "__default__"


class StoreError(RuntimeError):
    pass


class NotFoundError(StoreError):
    pass


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_dynamo(obj: Any) -> Any:
    # boto3 rejects floats; everything numeric goes in as Decimal
    if isinstance(obj, bool) or obj is None:
        return obj
    if isinstance(obj, float):
        return Decimal(str(obj))
    if isinstance(obj, dict):
        return {k: _to_dynamo(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_to_dynamo(v) for v in obj]
    return obj


def _dump_raw(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    return json.dumps(to_jsonable(raw), default=str)


def _load_raw(item: Dict[str, Any]) -> Dict[str, Any]:
    raw = item.get("raw")
    if isinstance(raw, str):
        try:
            item["raw"] = json.loads(raw)
        except ValueError:
            pass
    return item


def _is_conditional_failure(e: ClientError) -> bool:
    return e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class FulfillmentStore:
    """
    Thin table gateway over the fulfillment tables. Every write is a single-item
    operation except set_default_package, which uses one transaction.
    """

    def __init__(self, dynamodb=None, table_names: Optional[Dict[str, str]] = None):
        self._dynamodb = dynamodb
        self._names = dict(table_names or {})
        self._tables: Dict[str, Any] = {}

    # ---------------- table plumbing ----------------

    def _resource(self):
        if self._dynamodb is None:
            self._dynamodb = dynamodb_resource()
        return self._dynamodb

    def _table_name(self, kind: str) -> str:
        if kind not in self._names:
            self._names[kind] = require_env(TABLE_ENV_KEYS[kind])
        return self._names[kind]

    def _table(self, kind: str):
        if kind not in self._tables:
            self._tables[kind] = self._resource().Table(self._table_name(kind))
        return self._tables[kind]

    def _get(self, kind: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        res = self._table(kind).get_item(Key=key)
        item = res.get("Item")
        return to_jsonable(item) if item else None

    def _query(self, kind: str, index: Optional[str], condition) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"KeyConditionExpression": condition}
        if index:
            kwargs["IndexName"] = index
        items: List[Dict[str, Any]] = []
        while True:
            resp = self._table(kind).query(**kwargs)
            items.extend(resp.get("Items", []))
            if "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        return [to_jsonable(i) for i in items]

    def _scan(self, kind: str, filter_expression=None, consistent: bool = False) -> List[Dict[str, Any]]:
        kwargs: Dict[str, Any] = {"ConsistentRead": True} if consistent else {}
        if filter_expression is not None:
            kwargs["FilterExpression"] = filter_expression
        items: List[Dict[str, Any]] = []
        while True:
            resp = self._table(kind).scan(**kwargs)
            items.extend(resp.get("Items", []))
            if "LastEvaluatedKey" not in resp:
                break
            kwargs["ExclusiveStartKey"] = resp["LastEvaluatedKey"]
        return [to_jsonable(i) for i in items]

    def _update(self, kind: str, key: Dict[str, Any], fields: Dict[str, Any],
                condition: Optional[str] = None) -> None:
        if not fields:
            return
        names: Dict[str, str] = {}
        values: Dict[str, Any] = {}
        sets: List[str] = []
        for i, (attr, value) in enumerate(fields.items()):
            names[f"#f{i}"] = attr
            values[f":v{i}"] = _to_dynamo(value)
            sets.append(f"#f{i} = :v{i}")
        kwargs: Dict[str, Any] = {
            "Key": key,
            "UpdateExpression": "SET " + ", ".join(sets),
            "ExpressionAttributeNames": names,
            "ExpressionAttributeValues": values,
        }
        if condition:
            kwargs["ConditionExpression"] = condition
        self._table(kind).update_item(**kwargs)

    # ---------------- orders ----------------

    def get_order(self, order_id: str) -> Optional[Dict[str, Any]]:
        return self._get("orders", {"order_id": order_id})

    def update_order(self, order_id: str, fields: Dict[str, Any]) -> None:
        self._update("orders", {"order_id": order_id}, {**fields, "updated_at": utc_now_iso()})

    def find_order_by_payment_intent(self, payment_intent_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("orders", "stripe_payment_intent_id-index",
                           Key("stripe_payment_intent_id").eq(payment_intent_id))
        return rows[0] if rows else None

    def put_order(self, order: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert a new order. None when an order with the same id already exists."""
        now = utc_now_iso()
        item = {"created_at": now, "updated_at": now, **order}
        try:
            self._table("orders").put_item(
                Item=_to_dynamo(item),
                ConditionExpression="attribute_not_exists(order_id)",
            )
        except ClientError as e:
            if _is_conditional_failure(e):
                return None
            raise
        return item

    # ---------------- invoices ----------------

    def get_invoice(self, invoice_id: str) -> Optional[Dict[str, Any]]:
        return self._get("invoices", {"invoice_id": invoice_id})

    def claim_invoice(self, invoice_id: str, order_id: str) -> bool:
        """Mark an invoice paid and link it to order_id. False if it was already linked."""
        try:
            self._update(
                "invoices",
                {"invoice_id": invoice_id},
                {"status": "paid", "order_id": order_id, "paid_at": utc_now_iso()},
                condition="attribute_exists(invoice_id) AND attribute_not_exists(order_id)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    # ---------------- packages ----------------

    def list_packages(self) -> List[Dict[str, Any]]:
        rows = [p for p in self._scan("packages") if p.get("package_id") != DEFAULT_MARKER_ID]
        return sorted(rows, key=lambda p: (not p.get("is_default"), str(p.get("name") or "").lower()))

    def get_package(self, package_id: str) -> Optional[Dict[str, Any]]:
        if package_id == DEFAULT_MARKER_ID:
            return None
        return self._get("packages", {"package_id": package_id})

    def find_package_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        rows = self._scan("packages", Attr("name").eq(name))
        return rows[0] if rows else None

    def get_default_package(self) -> Optional[Dict[str, Any]]:
        rows = self._scan("packages", Attr("is_default").eq(True))
        return rows[0] if rows else None

    def create_package(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        item = {
            "package_id": str(uuid.uuid4()),
            "is_default": False,
            "created_at": utc_now_iso(),
            **fields,
        }
        self._table("packages").put_item(Item=_to_dynamo(item))
        return item

    def delete_package(self, package_id: str) -> None:
        self._table("packages").delete_item(Key={"package_id": package_id})

    def set_default_package(self, package_id: str) -> None:
        """
        Clear every current default and flag package_id, in one transaction.

        Current defaults come from a strongly consistent scan. The transaction also
        bumps a version on a marker row in the packages table, conditioned on the
        version read before the scan, so two concurrent set-default calls always
        conflict on that row even when neither saw a default to clear.
        """
        if not self.get_package(package_id):
            raise NotFoundError(f"Package {package_id} not found")

        name = self._table_name("packages")
        marker = self._table("packages").get_item(Key={"package_id": DEFAULT_MARKER_ID}, ConsistentRead=True).get("Item")
        version = int(to_jsonable((marker or {}).get("version") or 0))
        marker_values = {":new": package_id, ":nv": version + 1}
        if version:
            marker_condition = "#v = :pv"
            marker_values[":pv"] = version
        else:
            marker_condition = "attribute_not_exists(#v)"
        # plain values: the resource client serializes AttributeValue shapes itself
        items: List[Dict[str, Any]] = [{"Update": {
            "TableName": name,
            "Key": {"package_id": DEFAULT_MARKER_ID},
            "UpdateExpression": "SET #c = :new, #v = :nv",
            "ConditionExpression": marker_condition,
            "ExpressionAttributeNames": {"#c": "current", "#v": "version"},
            "ExpressionAttributeValues": marker_values,
        }}]
        for pkg in self._scan("packages", Attr("is_default").eq(True), consistent=True):
            if pkg["package_id"] == package_id:
                continue
            items.append({"Update": {
                "TableName": name,
                "Key": {"package_id": pkg["package_id"]},
                "UpdateExpression": "SET is_default = :f",
                "ConditionExpression": "is_default = :t",
                "ExpressionAttributeValues": {":f": False, ":t": True},
            }})
        items.append({"Update": {
            "TableName": name,
            "Key": {"package_id": package_id},
            "UpdateExpression": "SET is_default = :t",
            "ConditionExpression": "attribute_exists(package_id)",
            "ExpressionAttributeValues": {":t": True},
        }})

        try:
            self._resource().meta.client.transact_write_items(TransactItems=items)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code == "TransactionCanceledException":
                raise StoreError("Default package changed concurrently; retry") from e
            raise
        logger.info(f"[STORE] Default package set to {package_id} (cleared {len(items) - 2})")

    # ---------------- shipments ----------------

    def get_shipment(self, shipment_id: str) -> Optional[Dict[str, Any]]:
        return self._get("shipments", {"shipment_id": shipment_id})

    def list_shipments(self, order_id: str) -> List[Dict[str, Any]]:
        rows = self._query("shipments", "order_id-index", Key("order_id").eq(order_id))
        return sorted(rows, key=lambda s: s.get("created_at") or "", reverse=True)

    def find_purchased_shipment(self, order_id: str) -> Optional[Dict[str, Any]]:
        for s in self.list_shipments(order_id):
            if s.get("status") == "purchased":
                return s
        return None

    def find_shipment_by_label_object_id(self, label_object_id: str) -> Optional[Dict[str, Any]]:
        rows = self._query("shipments", "label_object_id-index", Key("label_object_id").eq(label_object_id))
        return rows[0] if rows else None

    def find_shipment_by_tracking_number(self, tracking_number: str) -> Optional[Dict[str, Any]]:
        rows = self._query("shipments", "tracking_number-index", Key("tracking_number").eq(tracking_number))
        return rows[0] if rows else None

    def create_shipment(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        now = utc_now_iso()
        item = {"shipment_id": str(uuid.uuid4()), "created_at": now, "updated_at": now, **fields}
        # GSI key attributes cannot be stored as NULL
        clean = {k: v for k, v in item.items() if v is not None}
        self._table("shipments").put_item(Item=_to_dynamo(clean))
        return item

    def update_shipment(self, shipment_id: str, fields: Dict[str, Any]) -> None:
        fields = {k: v for k, v in fields.items() if v is not None}
        self._update(
            "shipments",
            {"shipment_id": shipment_id},
            {**fields, "updated_at": utc_now_iso()},
            condition="attribute_exists(shipment_id)",
        )

    def delete_shipment(self, shipment_id: str) -> None:
        events = self.list_shipment_events(shipment_id)
        with self._table("shipment_events").batch_writer() as batch:
            for ev in events:
                batch.delete_item(Key={"shipment_id": shipment_id, "event_id": ev["event_id"]})
        self._table("shipments").delete_item(Key={"shipment_id": shipment_id})

    # ---------------- shipment events (append-only) ----------------

    def add_shipment_event(self, shipment_id: str, event_code: str, description: str,
                           raw: Any = None) -> Dict[str, Any]:
        occurred_at = utc_now_iso()
        item = {
            "shipment_id": shipment_id,
            "event_id": f"{occurred_at}#{uuid.uuid4().hex}",
            "event_code": event_code,
            "description": description,
            "occurred_at": occurred_at,
        }
        raw_json = _dump_raw(raw)
        if raw_json is not None:
            item["raw"] = raw_json
        self._table("shipment_events").put_item(
            Item=item,
            ConditionExpression="attribute_not_exists(event_id)",
        )
        return _load_raw(dict(item))

    def list_shipment_events(self, shipment_id: str) -> List[Dict[str, Any]]:
        rows = self._query("shipment_events", None, Key("shipment_id").eq(shipment_id))
        return [_load_raw(r) for r in rows]

    # ---------------- webhook events ----------------

    def get_webhook_event(self, source: str, external_event_id: str) -> Optional[Dict[str, Any]]:
        item = self._get("webhook_events", {"source": source, "external_event_id": external_event_id})
        return _load_raw(item) if item else None

    def record_webhook_event(self, source: str, external_event_id: str, raw: Any) -> bool:
        """Insert the raw event. Returns False when (source, external_event_id) already exists."""
        try:
            self._table("webhook_events").put_item(
                Item={
                    "source": source,
                    "external_event_id": external_event_id,
                    "raw": _dump_raw(raw),
                    "received_at": utc_now_iso(),
                },
                ConditionExpression="attribute_not_exists(external_event_id)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise

    # ---------------- idempotency records ----------------

    def get_idempotency_record(self, key: str) -> Optional[Dict[str, Any]]:
        item = self._get("idempotency", {"idempotency_key": key})
        if not item:
            return None
        return _load_raw(item)

    def save_idempotency_record(self, key: str, order_id: str, result: Dict[str, Any]) -> bool:
        try:
            self._table("idempotency").put_item(
                Item={
                    "idempotency_key": key,
                    "order_id": order_id,
                    "raw": _dump_raw(result),
                    "created_at": utc_now_iso(),
                },
                ConditionExpression="attribute_not_exists(idempotency_key)",
            )
            return True
        except ClientError as e:
            if _is_conditional_failure(e):
                return False
            raise


_default_store: Optional[FulfillmentStore] = None


def get_store() -> FulfillmentStore:
    global _default_store
    if _default_store is None:
        _default_store = FulfillmentStore()
    return _default_store
