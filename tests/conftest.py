"""
Shared fixtures: environment, an in-memory app-config, an in-memory store
that mirrors FulfillmentStore, and a scriptable carrier backend.
"""
import os
import copy
import time
import uuid
import itertools

import pytest

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("AWS_DEFAULT_REGION", "us-west-2")
os.environ.setdefault("AWS_REGION", "us-west-2")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ.setdefault("APP_CONFIG_TABLE", "app-config-test")
for _kind, _var in {
    "shipments": "SHIPMENTS_TABLE",
    "shipment_events": "SHIPMENT_EVENTS_TABLE",
    "webhook_events": "WEBHOOK_EVENTS_TABLE",
    "packages": "PACKAGES_TABLE",
    "orders": "ORDERS_TABLE",
    "invoices": "INVOICES_TABLE",
    "idempotency": "IDEMPOTENCY_TABLE",
}.items():
    os.environ.setdefault(_var, f"{_kind}-test")
os.environ["LABEL_POLL_INTERVAL_SECONDS"] = "0"
os.environ.pop("MOCK_SHIPPING", None)
os.environ.pop("SHIPPO_WEBHOOK_SECRET", None)
os.environ.pop("STRIPE_WEBHOOK_SECRET", None)

import config_loader  # noqa: E402
from carriers import Carrier  # noqa: E402
from fulfillment_store import NotFoundError, StoreError  # noqa: E402

ORIGIN_CONFIG = {
    "shipping_origin_name": "Acme Widgets",
    "shipping_origin_email": "ship@acme.test",
    "shipping_origin_phone": "555-0100",
    "shipping_origin_address1": "1 Warehouse Way",
    "shipping_origin_city": "Portland",
    "shipping_origin_state": "OR",
    "shipping_origin_postal_code": "97201",
    "shipping_origin_country": "US",
}


@pytest.fixture(autouse=True)
def app_config():
    """Primes config_loader's cache so no test reads DynamoDB for config."""
    cfg = {"environment": "test", "shipping_provider": "mock", **ORIGIN_CONFIG}
    config_loader._cache_data = cfg
    config_loader._cache_expires_at = time.time() + 3600
    yield cfg
    config_loader.invalidate_cache()


# =============== In-memory store ===============

class FakeStore:
    """Same public surface as FulfillmentStore, kept in dicts."""

    def __init__(self):
        self.orders = {}
        self.invoices = {}
        self.packages = {}
        self.shipments = {}
        self.events = {}
        self.webhooks = {}
        self.idempotency = {}
        self.failures = {}
        self._clock = itertools.count(1)

    def fail(self, method, times=1):
        self.failures[method] = times

    def _maybe_fail(self, method):
        if self.failures.get(method, 0) > 0:
            self.failures[method] -= 1
            raise StoreError(f"injected failure in {method}")

    def _stamp(self):
        return f"2024-01-01T00:00:{next(self._clock):06d}+00:00"

    # orders
    def get_order(self, order_id):
        self._maybe_fail("get_order")
        o = self.orders.get(order_id)
        return copy.deepcopy(o) if o else None

    def update_order(self, order_id, fields):
        self._maybe_fail("update_order")
        self.orders.setdefault(order_id, {"order_id": order_id}).update(fields)

    def find_order_by_payment_intent(self, payment_intent_id):
        for o in self.orders.values():
            if o.get("stripe_payment_intent_id") == payment_intent_id:
                return copy.deepcopy(o)
        return None

    def put_order(self, order):
        self._maybe_fail("put_order")
        if order["order_id"] in self.orders:
            return None
        self.orders[order["order_id"]] = copy.deepcopy(order)
        return order

    # invoices
    def get_invoice(self, invoice_id):
        i = self.invoices.get(invoice_id)
        return copy.deepcopy(i) if i else None

    def claim_invoice(self, invoice_id, order_id):
        self._maybe_fail("claim_invoice")
        inv = self.invoices.get(invoice_id)
        if not inv or inv.get("order_id"):
            return False
        inv.update({"status": "paid", "order_id": order_id})
        return True

    # packages
    def list_packages(self):
        rows = [copy.deepcopy(p) for p in self.packages.values()]
        return sorted(rows, key=lambda p: (not p.get("is_default"), str(p.get("name") or "").lower()))

    def get_package(self, package_id):
        p = self.packages.get(package_id)
        return copy.deepcopy(p) if p else None

    def find_package_by_name(self, name):
        for p in self.packages.values():
            if p.get("name") == name:
                return copy.deepcopy(p)
        return None

    def get_default_package(self):
        for p in self.packages.values():
            if p.get("is_default"):
                return copy.deepcopy(p)
        return None

    def create_package(self, fields):
        item = {"package_id": str(uuid.uuid4()), "is_default": False, **fields}
        self.packages[item["package_id"]] = copy.deepcopy(item)
        return item

    def delete_package(self, package_id):
        self.packages.pop(package_id, None)

    def set_default_package(self, package_id):
        if package_id not in self.packages:
            raise NotFoundError(f"Package {package_id} not found")
        for pid, p in self.packages.items():
            p["is_default"] = pid == package_id

    # shipments
    def get_shipment(self, shipment_id):
        s = self.shipments.get(shipment_id)
        return copy.deepcopy(s) if s else None

    def list_shipments(self, order_id):
        rows = [copy.deepcopy(s) for s in self.shipments.values() if s.get("order_id") == order_id]
        return sorted(rows, key=lambda s: s.get("created_at") or "", reverse=True)

    def find_purchased_shipment(self, order_id):
        for s in self.list_shipments(order_id):
            if s.get("status") == "purchased":
                return s
        return None

    def find_shipment_by_label_object_id(self, label_object_id):
        for s in self.shipments.values():
            if s.get("label_object_id") == label_object_id:
                return copy.deepcopy(s)
        return None

    def find_shipment_by_tracking_number(self, tracking_number):
        for s in self.shipments.values():
            if s.get("tracking_number") == tracking_number:
                return copy.deepcopy(s)
        return None

    def create_shipment(self, fields):
        self._maybe_fail("create_shipment")
        now = self._stamp()
        item = {"shipment_id": str(uuid.uuid4()), "created_at": now, "updated_at": now, **fields}
        self.shipments[item["shipment_id"]] = copy.deepcopy(item)
        return item

    def update_shipment(self, shipment_id, fields):
        self._maybe_fail("update_shipment")
        if shipment_id not in self.shipments:
            raise StoreError("shipment missing")
        self.shipments[shipment_id].update({k: v for k, v in fields.items() if v is not None})

    def delete_shipment(self, shipment_id):
        self.events.pop(shipment_id, None)
        self.shipments.pop(shipment_id, None)

    # events
    def add_shipment_event(self, shipment_id, event_code, description, raw=None):
        self._maybe_fail("add_shipment_event")
        ev = {"shipment_id": shipment_id, "event_code": event_code,
              "description": description, "raw": copy.deepcopy(raw), "occurred_at": self._stamp()}
        self.events.setdefault(shipment_id, []).append(ev)
        return ev

    def list_shipment_events(self, shipment_id):
        return copy.deepcopy(self.events.get(shipment_id, []))

    # webhooks
    def get_webhook_event(self, source, external_event_id):
        self._maybe_fail("get_webhook_event")
        w = self.webhooks.get((source, external_event_id))
        return copy.deepcopy(w) if w else None

    def record_webhook_event(self, source, external_event_id, raw):
        self._maybe_fail("record_webhook_event")
        key = (source, external_event_id)
        if key in self.webhooks:
            return False
        self.webhooks[key] = {"source": source, "external_event_id": external_event_id, "raw": copy.deepcopy(raw)}
        return True

    # idempotency
    def get_idempotency_record(self, key):
        r = self.idempotency.get(key)
        return copy.deepcopy(r) if r else None

    def save_idempotency_record(self, key, order_id, result):
        if key in self.idempotency:
            return False
        self.idempotency[key] = {"idempotency_key": key, "order_id": order_id, "raw": copy.deepcopy(result)}
        return True


# =============== Scriptable carrier ===============

class FakeCarrier(Carrier):
    """
    purchase:  dict returned by purchase_label, or an exception to raise
    lookups:   results for successive resolve_label_url calls (the last one repeats)
    """
    name = "fake"

    def __init__(self, purchase=None, lookups=None, rates=None, void=None):
        super().__init__(["tok_live", "tok_test"], timeout=1)
        self.purchase = purchase
        self.lookups = list(lookups or [])
        self.rates = rates or []
        self.void = void or {"status": "voided"}
        self.purchase_calls = []
        self.lookup_calls = []
        self.void_calls = []

    def get_rates(self, from_address, to_address, parcel):
        self.last_rate_request = (from_address, to_address, parcel)
        return list(self.rates)

    def purchase_label(self, rate_id, shipment=None):
        self.purchase_calls.append(rate_id)
        if isinstance(self.purchase, Exception):
            raise self.purchase
        return dict(self.purchase)

    def resolve_label_url(self, transaction_id):
        self.lookup_calls.append(transaction_id)
        if not self.lookups:
            return None
        result = self.lookups.pop(0) if len(self.lookups) > 1 else self.lookups[0]
        if isinstance(result, Exception):
            raise result
        return dict(result) if result else None

    def void_label(self, transaction_id):
        self.void_calls.append(transaction_id)
        if isinstance(self.void, Exception):
            raise self.void
        return dict(self.void)


def label(**overrides):
    """Carrier label shape with sensible defaults."""
    base = {
        "label_url": None,
        "tracking_number": None,
        "tracking_url": None,
        "carrier": "USPS",
        "service": "Priority Mail",
        "amount_cents": 795,
        "currency": "USD",
        "transaction_id": "tx_1",
        "rate_id": "rate_1",
        "status": "QUEUED",
        "messages": [],
    }
    base.update(overrides)
    return base


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def order(store):
    o = {
        "order_id": "ord_1",
        "customer": {"email": "buyer@example.com", "first_name": "Ada", "last_name": "Lovelace"},
        "shipping_details": {
            "address_line1": "12 Analytical St",
            "city": "London",
            "state": "LDN",
            "postal_code": "N1 9GU",
            "country": "GB",
        },
        "line_items": [{"quantity": 2, "variant": {"weight_g": 100}}],
        "order_status": "pending_fulfillment",
        "shipping_status": "not_shipped",
    }
    store.orders[o["order_id"]] = o
    return o


@pytest.fixture
def default_package(store):
    pkg = store.create_package({"name": "Small Box", "length_cm": 20, "width_cm": 15, "height_cm": 10, "weight_g": 50})
    store.set_default_package(pkg["package_id"])
    return store.get_package(pkg["package_id"])


@pytest.fixture
def patch_store(monkeypatch, store):
    """Point every handler module's get_store() at the in-memory store."""
    import shipping_api
    import packages_api
    import shipments_api
    import shippo_webhook
    import stripe_webhook
    for mod in (shipping_api, packages_api, shipments_api, shippo_webhook, stripe_webhook):
        monkeypatch.setattr(mod, "get_store", lambda: store)
    return store
