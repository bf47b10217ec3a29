"""Tests for entitlement reads and account deletion."""
from datetime import timedelta

from app.core.clock import utc_now
from app.models.alert import Alert
from app.models.integration import Integration
from app.models.subscription import Subscription
from app.models.user import User, UserSession
from app.services.entitlements import (
    current_plan,
    current_subscription,
    find_pending_cancellation,
    format_price,
    integration_limits,
    user_stats,
)


def _subscription(db_session, user, ref, status, plan_type="pro", age_days=0, cancel=False):
    row = Subscription(
        user_id=user.id,
        stripe_subscription_id=ref,
        status=status,
        plan_type=plan_type,
        cancel_at_period_end=cancel,
        created_at=utc_now() - timedelta(days=age_days),
    )
    db_session.add(row)
    db_session.commit()
    return row


class TestCurrentPlan:

    def test_user_without_subscription_is_free(self, db_session, make_user):
        user = make_user()
        assert current_plan(db_session, user.id) == "free"
        assert current_subscription(db_session, user.id) is None

    def test_newest_active_like_subscription_wins(self, db_session, make_user):
        user = make_user()
        _subscription(db_session, user, "sub_old", "active", plan_type="pro", age_days=10)
        _subscription(db_session, user, "sub_new", "trialing", plan_type="business", age_days=1)

        assert current_plan(db_session, user.id) == "business"
        assert current_subscription(db_session, user.id).stripe_subscription_id == "sub_new"

    def test_canceled_subscriptions_are_ignored(self, db_session, make_user):
        user = make_user()
        _subscription(db_session, user, "sub_old", "active", plan_type="pro", age_days=10)
        _subscription(db_session, user, "sub_new", "canceled", plan_type="business", age_days=1)

        assert current_plan(db_session, user.id) == "pro"

    def test_past_due_keeps_the_plan(self, db_session, make_user):
        user = make_user()
        _subscription(db_session, user, "sub_1", "past_due", plan_type="business")
        assert current_plan(db_session, user.id) == "business"

    def test_only_canceled_history_is_free(self, db_session, make_user):
        user = make_user()
        _subscription(db_session, user, "sub_1", "canceled")
        _subscription(db_session, user, "sub_2", "incomplete_expired")
        assert current_plan(db_session, user.id) == "free"

    def test_plans_are_per_user(self, db_session, make_user):
        owner = make_user()
        other = make_user(email="b@x.com")
        _subscription(db_session, owner, "sub_1", "active", plan_type="business")
        assert current_plan(db_session, other.id) == "free"

    def test_pending_cancellation(self, db_session, make_user):
        user = make_user()
        assert find_pending_cancellation(db_session, user.id) is None
        _subscription(db_session, user, "sub_1", "active", cancel=True)
        assert find_pending_cancellation(db_session, user.id).stripe_subscription_id == "sub_1"


class TestStats:

    def test_counts_active_integrations_and_unread_alerts(self, db_session, make_user):
        user = make_user()
        db_session.add_all([
            Integration(user_id=user.id, integration_type="stripe", integration_name="Stripe"),
            Integration(user_id=user.id, integration_type="gmail", integration_name="Gmail", is_active=False),
            Alert(user_id=user.id, alert_type="payment_failed", title="t", message="m", severity="error"),
            Alert(user_id=user.id, alert_type="payment_failed", title="t", message="m", severity="error",
                  is_read=True),
        ])
        db_session.commit()
        _subscription(db_session, user, "sub_1", "active", plan_type="business")

        assert user_stats(db_session, user) == {
            "active_integrations": 1,
            "unread_alerts": 1,
            "subscription_plan": "business",
            "subscription_status": "free",
        }

    def test_stats_endpoint(self, client, auth_headers):
        response = client.get("/api/users/stats", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["subscription_plan"] == "free"


def test_format_price():
    assert format_price(995) == "€9.95"
    assert format_price(1995) == "€19.95"


class TestAccountDeletion:

    def test_deleting_a_user_removes_dependent_rows(self, db_session, make_user):
        user = make_user()
        other = make_user(email="b@x.com")
        for owner in (user, other):
            db_session.add_all([
                UserSession(user_id=owner.id, session_token=f"tok-{owner.id}",
                            expires_at=utc_now() + timedelta(days=1)),
                Alert(user_id=owner.id, alert_type="payment_failed", title="t", message="m", severity="error"),
                Integration(user_id=owner.id, integration_type="stripe", integration_name="Stripe"),
            ])
        db_session.commit()
        _subscription(db_session, user, "sub_1", "active")

        db_session.delete(user)
        db_session.commit()

        for model in (UserSession, Alert, Integration, Subscription):
            assert db_session.query(model).filter(model.user_id == user.id).count() == 0
        assert db_session.query(UserSession).filter(UserSession.user_id == other.id).count() == 1
        assert db_session.query(Alert).filter(Alert.user_id == other.id).count() == 1

    def test_delete_account_endpoint(self, client, db_session, registered, auth_headers):
        user_id = registered["user"]["id"]

        response = client.delete("/api/users/account", headers=auth_headers)
        assert response.status_code == 200

        db_session.expire_all()
        assert db_session.query(User).filter(User.id == user_id).first() is None
        assert db_session.query(UserSession).filter(UserSession.user_id == user_id).count() == 0

        response = client.get("/api/auth/me", headers=auth_headers)
        assert response.status_code == 401
        assert response.json()["detail"]["error"] == "unknown_session"


class TestIntegrationLimits:

    def test_free_user_gets_free_limits(self, db_session, make_user):
        user = make_user()
        db_session.add(Integration(user_id=user.id, integration_type="stripe", integration_name="Stripe"))
        db_session.commit()

        limits = integration_limits(db_session, user)

        assert limits["plan"] == "free"
        assert limits["subscription_status"] == "free"
        assert limits["limits"]["max_integrations"] == 2
        assert limits["limits"]["available_types"] == ["stripe"]
        assert limits["current_integrations"] == 1
        assert limits["can_add_more"] is True

    def test_free_user_at_the_limit(self, db_session, make_user):
        user = make_user()
        db_session.add_all([
            Integration(user_id=user.id, integration_type="stripe", integration_name="Stripe"),
            Integration(user_id=user.id, integration_type="gmail", integration_name="Gmail"),
            Integration(user_id=user.id, integration_type="ga_old", integration_name="Old", is_active=False),
        ])
        db_session.commit()

        limits = integration_limits(db_session, user)

        assert limits["current_integrations"] == 2
        assert limits["can_add_more"] is False

    def test_business_plan_unlocks_premium_types(self, db_session, make_user):
        user = make_user()
        user.subscription_status = "active"
        db_session.commit()
        _subscription(db_session, user, "sub_1", "active", plan_type="business")

        limits = integration_limits(db_session, user)

        assert limits["plan"] == "business"
        assert "google_analytics" in limits["limits"]["available_types"]
        assert "api_access" in limits["limits"]["features"]
        assert limits["can_add_more"] is True

    def test_canceled_plan_falls_back_to_free_limits(self, db_session, make_user):
        user = make_user()
        _subscription(db_session, user, "sub_1", "canceled", plan_type="pro")
        assert integration_limits(db_session, user)["limits"]["max_integrations"] == 2

    def test_limits_endpoint(self, client, auth_headers):
        response = client.get("/api/integrations/limits", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["plan"] == "free"
        assert body["limits"] == {
            "max_integrations": 2,
            "available_types": ["stripe"],
            "features": ["basic_analytics"],
        }
        assert body["current_integrations"] == 0
        assert body["can_add_more"] is True

    def test_limits_endpoint_requires_authentication(self, client):
        assert client.get("/api/integrations/limits").status_code == 401
