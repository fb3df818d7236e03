"""
Label purchase flow against a scripted carrier: guard, eventual consistency,
blocking messages, persistence and best-effort side effects.
"""
from unittest import mock

import pytest

from carriers import CarrierAuthError, CarrierError
from config_loader import ConfigError
from fulfillment_store import NotFoundError
from label_purchase import (
    InvalidStateError,
    LabelBlockedError,
    LabelConflictError,
    LabelUnresolvedError,
    await_label_url,
    create_manual_shipment,
    ensure_label_url,
    get_rates_for_order,
    is_blocking,
    list_shipments_with_labels,
    purchase_label,
    update_manual_shipment,
    void_shipment,
)

from conftest import FakeCarrier, label


def _buy(store, carrier, order_id="ord_1", **kw):
    kw.setdefault("sleep", lambda s: None)
    kw.setdefault("notify", mock.Mock())
    return purchase_label(store, carrier, order_id, "rate_1", **kw)


class TestRates:
    def test_rates_use_order_context(self, store, order, default_package):
        carrier = FakeCarrier(rates=[{"rate_id": "r1", "carrier": "USPS", "service": "Ground",
                                      "amount_cents": 500, "currency": "USD", "estimated_days": 3}])
        rates = get_rates_for_order(store, carrier, "ord_1")
        assert rates[0]["rate_id"] == "r1"
        _from, to, parcel = carrier.last_rate_request
        assert to["postal_code"] == "N1 9GU"
        assert parcel["weight_g"] == 250

    def test_unknown_order(self, store, default_package):
        with pytest.raises(NotFoundError):
            get_rates_for_order(store, FakeCarrier(), "missing")

    def test_no_package_is_config_error(self, store, order):
        with pytest.raises(ConfigError):
            get_rates_for_order(store, FakeCarrier(), "ord_1")


class TestPurchaseGuard:
    def test_second_purchase_is_a_conflict(self, store, order, default_package):
        store.create_shipment({"order_id": "ord_1", "status": "purchased"})
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        with pytest.raises(LabelConflictError):
            _buy(store, carrier)
        assert carrier.purchase_calls == []
        assert len(store.shipments) == 1

    def test_voided_shipment_does_not_block(self, store, order, default_package):
        store.create_shipment({"order_id": "ord_1", "status": "voided"})
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        _buy(store, carrier)
        assert len(store.shipments) == 2

    def test_config_error_before_carrier_call(self, store, order):
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        with pytest.raises(ConfigError):
            _buy(store, carrier)
        assert carrier.purchase_calls == []


class TestPurchaseEventualConsistency:
    def test_immediate_url_needs_no_lookup(self, store, order, default_package):
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf", tracking_number="TRK1"))
        out = _buy(store, carrier)
        assert out["label_url"] == "https://shippo/l.pdf"
        assert out["tracking_number"] == "TRK1"
        assert carrier.lookup_calls == []

    def test_url_appears_on_third_poll(self, store, order, default_package):
        pending = label(status="QUEUED")
        carrier = FakeCarrier(
            purchase=label(),
            lookups=[pending, pending, pending, label(label_url="https://shippo/late.pdf", status="SUCCESS")],
        )
        sleeps = []
        out = _buy(store, carrier, sleep=sleeps.append)

        assert out["label_url"] == "https://shippo/late.pdf"
        # direct lookup + 3 polls
        assert len(carrier.lookup_calls) == 4
        assert len(sleeps) == 3
        (shipment,) = store.shipments.values()
        assert shipment["label_url"] == "https://shippo/late.pdf"
        assert shipment["status"] == "purchased"

    def test_unresolved_url_still_persists_shipment(self, store, order, default_package):
        carrier = FakeCarrier(purchase=label(tracking_number="TRK9"), lookups=[label(status="QUEUED")])
        out = _buy(store, carrier)
        assert out["shipment_id"] in store.shipments
        assert out["label_url"] is None
        assert store.shipments[out["shipment_id"]]["label_object_id"] == "tx_1"

    def test_lookup_errors_are_tolerated_while_polling(self, store, order, default_package):
        carrier = FakeCarrier(
            purchase=label(),
            lookups=[CarrierError("boom", 500), label(label_url="https://shippo/ok.pdf")],
        )
        out = _buy(store, carrier)
        assert out["label_url"] == "https://shippo/ok.pdf"

    def test_poll_budget_is_bounded(self):
        carrier = FakeCarrier(lookups=[label(status="QUEUED")])
        sleeps = []
        await_label_url(carrier, label(), attempts=3, interval=0.5, sleep=sleeps.append)
        assert sleeps == [0.5, 0.5, 0.5]
        assert len(carrier.lookup_calls) == 4


class TestPurchaseBlocking:
    def test_blocking_messages_abort_without_row(self, store, order, default_package):
        blocked = label(status="ERROR", messages=["Address needs correction", "Unit number missing"])
        carrier = FakeCarrier(purchase=blocked, lookups=[blocked])
        with pytest.raises(LabelBlockedError) as exc:
            _buy(store, carrier)
        assert exc.value.messages == ["Address needs correction", "Unit number missing"]
        assert store.shipments == {}

    def test_carrier_rejection_with_messages_is_blocked(self, store, order, default_package):
        carrier = FakeCarrier(purchase=CarrierError("400", 400, ["Invalid zip"]))
        with pytest.raises(LabelBlockedError) as exc:
            _buy(store, carrier)
        assert exc.value.messages == ["Invalid zip"]
        assert store.shipments == {}

    def test_carrier_rejection_without_messages_propagates(self, store, order, default_package):
        carrier = FakeCarrier(purchase=CarrierError("gateway down", 503))
        with pytest.raises(CarrierError):
            _buy(store, carrier)
        assert store.shipments == {}

    def test_messages_with_pending_status_are_not_blocking(self):
        assert not is_blocking(label(status="QUEUED", messages=["Rate will be charged"]))
        assert is_blocking(label(status="ERROR", messages=["bad"]))
        assert not is_blocking(label(status="ERROR", messages=["bad"], label_url="https://x"))

    def test_failed_status_without_messages_aborts_without_row(self, store, order, default_package):
        failed = label(status="ERROR", messages=[])
        carrier = FakeCarrier(purchase=failed, lookups=[failed])
        with pytest.raises(LabelBlockedError) as exc:
            _buy(store, carrier)
        assert exc.value.messages == ["Label purchase not successful (ERROR)"]
        assert store.shipments == {}
        assert store.orders["ord_1"]["shipping_status"] == "not_shipped"

        # nothing was recorded, so a corrected retry is not a conflict
        carrier.purchase = label(label_url="https://shippo/l.pdf")
        assert _buy(store, carrier)["label_url"] == "https://shippo/l.pdf"

    def test_status_alone_decides_without_messages(self):
        assert is_blocking(label(status="FAILED"))
        assert not is_blocking(label(status="QUEUED"))
        assert not is_blocking(label(status=None))


class TestPurchaseSideEffects:
    def test_event_order_status_and_email(self, store, order, default_package):
        notify = mock.Mock()
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        out = _buy(store, carrier, notify=notify, idempotency_key="idem-1")

        events = store.list_shipment_events(out["shipment_id"])
        assert [e["event_code"] for e in events] == ["LABEL_PURCHASED"]
        assert events[0]["raw"]["idempotency_key"] == "idem-1"
        assert store.orders["ord_1"]["order_status"] == "fulfilled"
        assert store.orders["ord_1"]["shipping_status"] == "shipped"
        notify.assert_called_once()
        assert notify.call_args[0][0] == "buyer@example.com"
        assert "warnings" not in out

    def test_side_effect_failures_do_not_fail_purchase(self, store, order, default_package):
        store.fail("update_order")
        store.fail("add_shipment_event")
        notify = mock.Mock(side_effect=RuntimeError("ses down"))
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        out = _buy(store, carrier, notify=notify)
        assert out["shipment_id"] in store.shipments
        assert sorted(out["warnings"]) == ["confirmation email failed", "order status failed", "purchase event failed"]

    def test_persist_is_retried_once(self, store, order, default_package):
        store.fail("create_shipment", times=1)
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        out = _buy(store, carrier)
        assert out["shipment_id"] in store.shipments

    def test_persist_failure_returns_label_with_warning(self, store, order, default_package):
        store.fail("create_shipment", times=2)
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf", tracking_number="T"))
        out = _buy(store, carrier)
        assert out["shipment_id"] is None
        assert out["label_url"] == "https://shippo/l.pdf"
        assert out["warnings"]
        assert len(carrier.purchase_calls) == 1

    def test_post_insert_refresh_fills_url(self, store, order, default_package):
        # polling budget of zero leaves the URL for the post-insert lookup
        carrier = FakeCarrier(purchase=label(), lookups=[label(status="QUEUED"), label(label_url="https://shippo/late.pdf")])
        with mock.patch("label_purchase.poll_attempts", return_value=0):
            out = _buy(store, carrier)
        assert out["label_url"] == "https://shippo/late.pdf"
        assert store.shipments[out["shipment_id"]]["label_url"] == "https://shippo/late.pdf"


class TestIdempotency:
    def test_key_recorded_but_not_enforced_by_default(self, store, order, default_package):
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        _buy(store, carrier, idempotency_key="k1")
        assert store.idempotency["k1"]["order_id"] == "ord_1"
        with pytest.raises(LabelConflictError):
            _buy(store, carrier, idempotency_key="k1")

    def test_enforced_key_replays_result(self, store, order, default_package, app_config):
        app_config["label_idempotency_enforced"] = "true"
        carrier = FakeCarrier(purchase=label(label_url="https://shippo/l.pdf"))
        first = _buy(store, carrier, idempotency_key="k2")
        second = _buy(store, carrier, idempotency_key="k2")
        assert second["replayed"] is True
        assert second["shipment_id"] == first["shipment_id"]
        assert len(carrier.purchase_calls) == 1

    def test_enforced_key_for_other_order_conflicts(self, store, order, default_package, app_config):
        app_config["label_idempotency_enforced"] = "true"
        store.save_idempotency_record("k3", "ord_other", {"shipment_id": "s"})
        with pytest.raises(LabelConflictError):
            _buy(store, FakeCarrier(purchase=label()), idempotency_key="k3")


class TestVoid:
    def test_void_purchased(self, store):
        s = store.create_shipment({"order_id": "ord_1", "status": "purchased", "label_object_id": "tx_9"})
        carrier = FakeCarrier()
        assert void_shipment(store, carrier, s["shipment_id"]) == {"success": True, "status": "voided"}
        assert carrier.void_calls == ["tx_9"]
        assert store.shipments[s["shipment_id"]]["status"] == "voided"
        assert store.events[s["shipment_id"]][0]["event_code"] == "LABEL_VOIDED"

    def test_status_update_is_retried_once(self, store):
        s = store.create_shipment({"order_id": "ord_1", "status": "purchased", "label_object_id": "tx_9"})
        store.fail("update_shipment")
        assert void_shipment(store, FakeCarrier(), s["shipment_id"]) == {"success": True, "status": "voided"}
        assert store.shipments[s["shipment_id"]]["status"] == "voided"

    def test_status_update_failure_after_carrier_void_still_succeeds(self, store):
        s = store.create_shipment({"order_id": "ord_1", "status": "purchased", "label_object_id": "tx_9"})
        carrier = FakeCarrier()
        store.fail("update_shipment", times=2)
        result = void_shipment(store, carrier, s["shipment_id"])
        assert result["success"] is True
        assert result["warnings"] == ["Label voided but the shipment status could not be updated"]
        assert carrier.void_calls == ["tx_9"]
        assert store.shipments[s["shipment_id"]]["status"] == "purchased"
        assert store.events[s["shipment_id"]][0]["event_code"] == "LABEL_VOIDED"

    @pytest.mark.parametrize("status", ["voided", "delivered", "shipped"])
    def test_only_purchased_can_be_voided(self, store, status):
        s = store.create_shipment({"order_id": "ord_1", "status": status, "label_object_id": "tx"})
        carrier = FakeCarrier()
        with pytest.raises(InvalidStateError):
            void_shipment(store, carrier, s["shipment_id"])
        assert carrier.void_calls == []

    def test_carrier_refusal_leaves_status(self, store):
        s = store.create_shipment({"order_id": "ord_1", "status": "purchased", "label_object_id": "tx"})
        with pytest.raises(CarrierError):
            void_shipment(store, FakeCarrier(void=CarrierError("too late", 400)), s["shipment_id"])
        assert store.shipments[s["shipment_id"]]["status"] == "purchased"

    def test_missing_shipment(self, store):
        with pytest.raises(NotFoundError):
            void_shipment(store, FakeCarrier(), "nope")


class TestEnsureLabelUrl:
    def test_existing_url_returned_without_lookup(self, store):
        s = store.create_shipment({"order_id": "o", "label_url": "https://a", "label_object_id": "tx"})
        carrier = FakeCarrier()
        assert ensure_label_url(store, carrier, s["shipment_id"])["label_url"] == "https://a"
        assert carrier.lookup_calls == []

    def test_lookup_persists_url(self, store):
        s = store.create_shipment({"order_id": "o", "label_object_id": "tx"})
        carrier = FakeCarrier(lookups=[label(label_url="https://b", tracking_number="T2")])
        out = ensure_label_url(store, carrier, s["shipment_id"])
        assert out == {"label_url": "https://b", "tracking_number": "T2", "tracking_url": None}
        assert store.shipments[s["shipment_id"]]["label_url"] == "https://b"

    def test_unresolved(self, store):
        s = store.create_shipment({"order_id": "o", "label_object_id": "tx"})
        with pytest.raises(LabelUnresolvedError):
            ensure_label_url(store, FakeCarrier(lookups=[CarrierAuthError("nope", 404)]), s["shipment_id"])

    def test_no_transaction_id(self, store):
        s = store.create_shipment({"order_id": "o"})
        with pytest.raises(InvalidStateError):
            ensure_label_url(store, FakeCarrier(), s["shipment_id"])


class TestShipmentListing:
    def test_refreshes_expiring_urls(self, store):
        old = store.create_shipment({"order_id": "o", "label_object_id": "tx1", "label_url": "https://old"})
        store.create_shipment({"order_id": "o", "carrier": "UPS", "tracking_number": "1Z"})
        carrier = FakeCarrier(lookups=[label(label_url="https://fresh")])
        rows = list_shipments_with_labels(store, carrier, "o")
        assert len(rows) == 2
        by_id = {r["shipment_id"]: r for r in rows}
        assert by_id[old["shipment_id"]]["label_url"] == "https://fresh"
        assert carrier.lookup_calls == ["tx1"]

    def test_newest_first(self, store):
        a = store.create_shipment({"order_id": "o"})
        b = store.create_shipment({"order_id": "o"})
        rows = list_shipments_with_labels(store, None, "o")
        assert [r["shipment_id"] for r in rows] == [b["shipment_id"], a["shipment_id"]]


class TestManualShipments:
    def test_create_marks_order_shipped(self, store, order, default_package):
        notify = mock.Mock()
        s = create_manual_shipment(store, "ord_1", {"carrier": "UPS", "tracking_number": "1Z999"}, notify=notify)
        assert s["status"] == "shipped"
        assert s["package_name"] == "Small Box"
        assert store.orders["ord_1"]["shipping_status"] == "shipped"
        assert store.events[s["shipment_id"]][0]["event_code"] == "MANUAL_SHIPMENT_CREATED"
        notify.assert_called_once()

    def test_create_without_email_flag(self, store, order):
        notify = mock.Mock()
        s = create_manual_shipment(store, "ord_1", {"carrier": "UPS", "tracking_number": "1Z", "email": False},
                                   notify=notify)
        assert s["package_name"] == "Manual"
        notify.assert_not_called()

    def test_delivered_update_fulfills_order(self, store, order):
        s = store.create_shipment({"order_id": "ord_1", "status": "shipped", "to_email": "buyer@example.com"})
        notify = mock.Mock()
        update_manual_shipment(store, s["shipment_id"], {"status": "delivered", "email": True}, notify=notify)
        assert store.shipments[s["shipment_id"]]["status"] == "delivered"
        assert store.orders["ord_1"]["shipping_status"] == "delivered"
        assert store.orders["ord_1"]["order_status"] == "fulfilled"
        notify.assert_called_once()

    def test_update_emails_order_customer_by_default(self, store, order):
        s = store.create_shipment({"order_id": "ord_1", "status": "shipped"})
        notify = mock.Mock()
        update_manual_shipment(store, s["shipment_id"], {"tracking_number": "1Z42"}, notify=notify)
        assert notify.call_args.args[0] == "buyer@example.com"
        assert notify.call_args.args[1]["order_id"] == "ord_1"

    def test_update_email_can_be_turned_off(self, store, order):
        s = store.create_shipment({"order_id": "ord_1", "status": "shipped"})
        notify = mock.Mock()
        update_manual_shipment(store, s["shipment_id"], {"tracking_number": "1Z42", "email": False}, notify=notify)
        notify.assert_not_called()

    def test_empty_update_rejected(self, store):
        s = store.create_shipment({"order_id": "ord_1"})
        with pytest.raises(InvalidStateError):
            update_manual_shipment(store, s["shipment_id"], {"unrelated": 1})
