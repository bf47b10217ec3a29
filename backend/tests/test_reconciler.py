"""Tests for Stripe event reconciliation."""
import pytest
from sqlalchemy.exc import IntegrityError

from conftest import make_event, subscription_object

from app.models.alert import Alert
from app.models.billing_event import ProcessedBillingEvent
from app.models.integration import Integration
from app.models.subscription import Subscription
from app.models.user import User
from app.services.entitlements import current_plan
from app.services.reconciler import (
    BillingEventReconciler,
    MalformedEventError,
    Outcome,
)


@pytest.fixture
def reconciler(db_session, settings):
    return BillingEventReconciler(db_session, settings)


@pytest.fixture
def user(make_user):
    return make_user(email="a@x.com", stripe_customer_id="cus_1")


def _alerts(db_session, user_id, kind=None):
    query = db_session.query(Alert).filter(Alert.user_id == user_id)
    if kind:
        query = query.filter(Alert.alert_type == kind)
    return query.order_by(Alert.id).all()


def _rows(db_session, subscription_id="sub_1"):
    return db_session.query(Subscription).filter(
        Subscription.stripe_subscription_id == subscription_id
    ).all()


def _created(event_id="evt_created", created=1760000000, **kwargs):
    return make_event(
        "customer.subscription.created", subscription_object(**kwargs), event_id=event_id, created=created
    )


class TestSubscriptionCreated:

    def test_creates_row_status_and_welcome_alert(self, reconciler, db_session, user):
        result = reconciler.handle(_created(status="trialing", plan_type="pro"))

        assert result.outcome == Outcome.applied
        assert result.user_id == user.id
        db_session.refresh(user)
        assert user.subscription_status == "trialing"

        rows = _rows(db_session)
        assert len(rows) == 1
        assert rows[0].user_id == user.id
        assert rows[0].plan_type == "pro"
        assert rows[0].status == "trialing"
        assert rows[0].current_period_end is not None

        alerts = _alerts(db_session, user.id, "subscription_created")
        assert len(alerts) == 1
        assert alerts[0].severity == "success"
        assert alerts[0].is_read is False
        assert alerts[0].data == {"subscription_id": "sub_1", "plan": "pro"}

    def test_redelivery_with_same_event_id_is_a_no_op(self, reconciler, db_session, user):
        event = _created()
        reconciler.handle(event)
        result = reconciler.handle(event)

        assert result.outcome == Outcome.duplicate
        assert len(_rows(db_session)) == 1
        db_session.refresh(user)
        assert user.subscription_status == "trialing"
        assert len(_alerts(db_session, user.id)) == 1
        assert db_session.query(ProcessedBillingEvent).count() == 1

    def test_replay_without_event_id_keeps_one_row(self, reconciler, db_session, user):
        # Without an id only the state is idempotent; the alert repeats
        event = _created(event_id=None)
        reconciler.handle(event)
        result = reconciler.handle(event)

        assert result.outcome == Outcome.applied
        assert len(_rows(db_session)) == 1
        db_session.refresh(user)
        assert user.subscription_status == "trialing"
        assert len(_alerts(db_session, user.id, "subscription_created")) == 2

    def test_plan_defaults_to_pro_without_metadata(self, reconciler, db_session, user):
        obj = subscription_object(status="active")
        obj["metadata"] = {}
        reconciler.handle(make_event("customer.subscription.created", obj, event_id="evt_1"))
        assert _rows(db_session)[0].plan_type == "pro"

    def test_period_read_from_items_when_missing_on_subscription(self, reconciler, db_session, user):
        obj = subscription_object(status="active", period_start=None, period_end=None)
        obj["items"] = {"data": [{"id": "si_1", "current_period_start": 1760000000, "current_period_end": 1762592000}]}
        reconciler.handle(make_event("customer.subscription.created", obj, event_id="evt_1"))

        row = _rows(db_session)[0]
        assert row.current_period_start is not None
        assert row.current_period_end is not None

    def test_unknown_customer_is_acknowledged_without_changes(self, reconciler, db_session, user):
        result = reconciler.handle(_created(customer="cus_unknown"))

        assert result.outcome == Outcome.user_not_found
        assert db_session.query(Subscription).count() == 0
        assert db_session.query(Alert).count() == 0
        assert db_session.query(ProcessedBillingEvent).count() == 0
        db_session.refresh(user)
        assert user.subscription_status == "free"

    def test_current_plan_follows_subscription(self, reconciler, db_session, user):
        assert current_plan(db_session, user.id) == "free"
        reconciler.handle(_created(status="active", plan_type="business"))
        assert current_plan(db_session, user.id) == "business"


class TestSubscriptionUpdated:

    def _updated(self, event_id, created, **kwargs):
        return make_event(
            "customer.subscription.updated", subscription_object(**kwargs), event_id=event_id, created=created
        )

    def test_scheduled_cancellation_warns(self, reconciler, db_session, user):
        reconciler.handle(_created(status="active"))
        result = reconciler.handle(
            self._updated("evt_upd", 1760000100, status="active", cancel_at_period_end=True)
        )

        assert result.outcome == Outcome.applied
        row = _rows(db_session)[0]
        assert row.cancel_at_period_end is True
        alert = _alerts(db_session, user.id, "subscription_updated")[-1]
        assert alert.severity == "warning"
        assert "canceled" in alert.message

    def test_reactivation_is_success(self, reconciler, db_session, user):
        reconciler.handle(_created(status="past_due"))
        reconciler.handle(self._updated("evt_upd", 1760000100, status="active"))

        db_session.refresh(user)
        assert user.subscription_status == "active"
        alert = _alerts(db_session, user.id, "subscription_updated")[-1]
        assert alert.severity == "success"

    def test_cancellation_withdrawn_is_success(self, reconciler, db_session, user):
        reconciler.handle(_created(status="active", cancel_at_period_end=True))
        reconciler.handle(self._updated("evt_upd", 1760000100, status="active", cancel_at_period_end=False))

        assert _alerts(db_session, user.id, "subscription_updated")[-1].severity == "success"

    def test_other_changes_are_info(self, reconciler, db_session, user):
        reconciler.handle(_created(status="active"))
        reconciler.handle(self._updated("evt_upd", 1760000100, status="active", period_end=1765000000))

        assert _alerts(db_session, user.id, "subscription_updated")[-1].severity == "info"

    def test_update_before_create_upserts_the_row(self, reconciler, db_session, user):
        result = reconciler.handle(self._updated("evt_upd", 1760000100, status="active"))

        assert result.outcome == Outcome.applied
        assert len(_rows(db_session)) == 1
        db_session.refresh(user)
        assert user.subscription_status == "active"

    def test_stale_event_does_not_regress_state(self, reconciler, db_session, user):
        reconciler.handle(self._updated("evt_new", 1760000200, status="active"))
        result = reconciler.handle(self._updated("evt_old", 1760000100, status="past_due"))

        assert result.outcome == Outcome.stale
        assert _rows(db_session)[0].status == "active"
        db_session.refresh(user)
        assert user.subscription_status == "active"

    def test_late_created_event_after_update_is_stale(self, reconciler, db_session, user):
        reconciler.handle(self._updated("evt_upd", 1760000200, status="active"))
        result = reconciler.handle(_created(created=1760000000, status="trialing"))

        assert result.outcome == Outcome.stale
        assert _rows(db_session)[0].status == "active"

    def test_unpaid_maps_to_past_due(self, reconciler, db_session, user):
        reconciler.handle(_created(status="active"))
        reconciler.handle(self._updated("evt_upd", 1760000100, status="unpaid"))

        db_session.refresh(user)
        assert user.subscription_status == "past_due"
        assert _rows(db_session)[0].status == "unpaid"


class TestSubscriptionDeleted:

    def test_cancels_row_downgrades_user_and_alerts(self, reconciler, db_session, user):
        db_session.add_all([
            Integration(user_id=user.id, integration_type="google_analytics", integration_name="GA"),
            Integration(user_id=user.id, integration_type="stripe", integration_name="Stripe"),
        ])
        db_session.commit()
        reconciler.handle(_created(status="trialing"))

        result = reconciler.handle(make_event(
            "customer.subscription.deleted",
            subscription_object(status="canceled"),
            event_id="evt_deleted",
            created=1760000500,
        ))

        assert result.outcome == Outcome.applied
        db_session.refresh(user)
        assert user.subscription_status == "free"
        rows = _rows(db_session)
        assert len(rows) == 1
        assert rows[0].status == "canceled"
        assert current_plan(db_session, user.id) == "free"

        alerts = _alerts(db_session, user.id, "subscription_canceled")
        assert len(alerts) == 1
        assert alerts[0].severity == "warning"

        db_session.expire_all()
        active = {i.integration_type: i.is_active for i in db_session.query(Integration).all()}
        assert active == {"google_analytics": False, "stripe": True}


class TestInvoiceEvents:

    def test_payment_succeeded_alert(self, reconciler, db_session, user):
        invoice = {"id": "in_1", "customer": "cus_1", "amount_paid": 995, "currency": "eur"}
        result = reconciler.handle(make_event("invoice.payment_succeeded", invoice, event_id="evt_pay"))

        assert result.outcome == Outcome.applied
        alert = _alerts(db_session, user.id, "payment_succeeded")[0]
        assert alert.severity == "success"
        assert alert.data == {"invoice_id": "in_1", "amount": 9.95, "currency": "eur"}
        assert "9.95 EUR" in alert.message
        assert db_session.query(Subscription).count() == 0

    def test_payment_failed_alert(self, reconciler, db_session, user):
        invoice = {"id": "in_2", "customer": "cus_1", "amount_due": 1995, "currency": "eur"}
        reconciler.handle(make_event("invoice.payment_failed", invoice, event_id="evt_fail"))

        alert = _alerts(db_session, user.id, "payment_failed")[0]
        assert alert.severity == "error"
        assert alert.data["amount"] == 19.95

    def test_payment_for_unknown_customer(self, reconciler, db_session, user):
        invoice = {"id": "in_3", "customer": "cus_other", "amount_paid": 995, "currency": "eur"}
        result = reconciler.handle(make_event("invoice.payment_succeeded", invoice))

        assert result.outcome == Outcome.user_not_found
        assert db_session.query(Alert).count() == 0


class TestTrialWillEnd:

    def test_trial_ending_alert(self, reconciler, db_session, user):
        obj = subscription_object(status="trialing", trial_end=1761955200)  # 2025-11-01
        reconciler.handle(make_event("customer.subscription.trial_will_end", obj, event_id="evt_trial"))

        alert = _alerts(db_session, user.id, "trial_ending")[0]
        assert alert.severity == "warning"
        assert "01/11/2025" in alert.message
        assert alert.data["trial_end"].startswith("2025-11-01")

    def test_trial_end_missing_is_malformed(self, reconciler, db_session, user):
        obj = subscription_object(status="trialing", trial_end=None)
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("customer.subscription.trial_will_end", obj))
        assert db_session.query(Alert).count() == 0


class TestCustomerCreated:

    def test_binds_customer_to_user_by_email(self, reconciler, db_session, make_user):
        user = make_user(email="new@x.com")
        result = reconciler.handle(make_event(
            "customer.created", {"id": "cus_new", "email": "New@X.com"}, event_id="evt_cus"
        ))

        assert result.outcome == Outcome.applied
        db_session.refresh(user)
        assert user.stripe_customer_id == "cus_new"

    def test_does_not_rebind_user_with_customer(self, reconciler, db_session, user):
        result = reconciler.handle(make_event("customer.created", {"id": "cus_2", "email": "a@x.com"}))

        assert result.outcome == Outcome.user_not_found
        db_session.refresh(user)
        assert user.stripe_customer_id == "cus_1"

    def test_no_matching_email(self, reconciler, db_session, user):
        result = reconciler.handle(make_event("customer.created", {"id": "cus_3", "email": "ghost@x.com"}))
        assert result.outcome == Outcome.user_not_found
        assert db_session.query(User).filter(User.stripe_customer_id == "cus_3").count() == 0


class TestEnvelope:

    def test_unrecognized_event_type_is_ignored(self, reconciler, db_session, user):
        result = reconciler.handle(make_event("charge.refunded", {"id": "ch_1", "customer": "cus_1"}))
        assert result.outcome == Outcome.ignored
        assert db_session.query(Alert).count() == 0

    @pytest.mark.parametrize("event", [
        [],
        {"data": {"object": {}}},
        {"type": "customer.subscription.created"},
        {"type": "customer.subscription.created", "data": {"object": "sub_1"}},
    ])
    def test_bad_envelope(self, reconciler, event):
        with pytest.raises(MalformedEventError):
            reconciler.handle(event)

    def test_subscription_without_id_is_malformed(self, reconciler, db_session, user):
        obj = subscription_object()
        del obj["id"]
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("customer.subscription.created", obj))
        assert db_session.query(Subscription).count() == 0


class TestApplySnapshot:

    def test_mirrors_api_subscription_without_alert(self, reconciler, db_session, user):
        row = reconciler.apply_subscription_snapshot(user, subscription_object(status="trialing"))

        assert row.stripe_subscription_id == "sub_1"
        db_session.refresh(user)
        assert user.subscription_status == "trialing"
        assert db_session.query(Alert).count() == 0

        # The webhook for the same subscription lands on the same row
        reconciler.handle(_created(status="trialing"))
        assert len(_rows(db_session)) == 1
        assert len(_alerts(db_session, user.id, "subscription_created")) == 1


class TestMalformedFields:

    @pytest.mark.parametrize("field, value", [
        ("current_period_start", "2025-01-01"),
        ("current_period_end", "soon"),
        ("trial_end", {"at": 1}),
        ("current_period_end", 10 ** 20),
    ])
    def test_bad_timestamp_on_subscription(self, reconciler, db_session, user, field, value):
        obj = subscription_object()
        obj[field] = value
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("customer.subscription.created", obj, event_id="evt_1"))
        assert db_session.query(Subscription).count() == 0
        assert db_session.query(Alert).count() == 0

    def test_bad_envelope_created(self, reconciler, db_session, user):
        event = _created(created="not-a-number")
        with pytest.raises(MalformedEventError):
            reconciler.handle(event)
        assert db_session.query(Subscription).count() == 0

    def test_bad_trial_end_on_trial_event(self, reconciler, user):
        obj = subscription_object(trial_end="tomorrow")
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("customer.subscription.trial_will_end", obj))

    @pytest.mark.parametrize("invoice", [
        {"id": "in_1", "customer": "cus_1", "amount_paid": "9.95", "currency": "eur"},
        {"id": "in_1", "customer": "cus_1", "amount_paid": 9.95, "currency": "eur"},
        {"id": "in_1", "customer": "cus_1", "amount_paid": 995, "currency": 978},
        {"id": "in_1", "customer": {"id": "cus_1"}, "amount_paid": 995, "currency": "eur"},
    ])
    def test_bad_invoice_fields(self, reconciler, db_session, user, invoice):
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("invoice.payment_succeeded", invoice, event_id="evt_pay"))
        assert db_session.query(Alert).count() == 0
        assert db_session.query(ProcessedBillingEvent).count() == 0

    def test_bad_failed_invoice_amount(self, reconciler, user):
        invoice = {"id": "in_2", "customer": "cus_1", "amount_due": [1995], "currency": "eur"}
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("invoice.payment_failed", invoice))

    def test_non_string_customer_id(self, reconciler, user):
        with pytest.raises(MalformedEventError):
            reconciler.handle(make_event("customer.created", {"id": 42, "email": "a@x.com"}))


class TestUniquenessRetry:

    def test_conflict_is_retried_and_resolves_as_duplicate(self, reconciler, db_session, user, monkeypatch):
        event = _created()
        reconciler.handle(event)

        # First check misses the recorded event, as a concurrent worker would
        real_check = reconciler._already_processed
        calls = []

        def racy_check(event_id):
            calls.append(event_id)
            return False if len(calls) == 1 else real_check(event_id)

        monkeypatch.setattr(reconciler, "_already_processed", racy_check)
        result = reconciler.handle(event)

        assert result.outcome == Outcome.duplicate
        assert calls == ["evt_created", "evt_created"]
        assert len(_rows(db_session)) == 1
        assert len(_alerts(db_session, user.id)) == 1
        assert db_session.query(ProcessedBillingEvent).count() == 1

    def test_second_conflict_propagates(self, reconciler, db_session, user, monkeypatch):
        event = _created()
        reconciler.handle(event)
        monkeypatch.setattr(reconciler, "_already_processed", lambda event_id: False)

        with pytest.raises(IntegrityError):
            reconciler.handle(event)
        assert len(_alerts(db_session, user.id)) == 1
        assert db_session.query(ProcessedBillingEvent).count() == 1


class TestDeletedWithRemainingSubscription:

    def test_user_keeps_status_of_newer_subscription(self, reconciler, db_session, user):
        reconciler.handle(_created(event_id="evt_old", subscription_id="sub_old", status="active"))
        reconciler.handle(_created(event_id="evt_new", subscription_id="sub_new", status="active",
                                   plan_type="business"))
        db_session.add(Integration(user_id=user.id, integration_type="gmail", integration_name="Gmail"))
        db_session.commit()

        result = reconciler.handle(make_event(
            "customer.subscription.deleted",
            subscription_object(subscription_id="sub_old", status="canceled"),
            event_id="evt_deleted",
            created=1760000500,
        ))

        assert result.outcome == Outcome.applied
        db_session.refresh(user)
        assert user.subscription_status == "active"
        assert current_plan(db_session, user.id) == "business"
        assert _rows(db_session, "sub_old")[0].status == "canceled"
        assert len(_alerts(db_session, user.id, "subscription_canceled")) == 1
        db_session.expire_all()
        assert db_session.query(Integration).one().is_active is True
