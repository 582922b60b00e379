import json

import main
from models import Payment, User
from payment_gateway import YooKassaClient

HEADERS = {"X-Telegram-Id": "111"}
CRON = {"Authorization": "Bearer cron-secret"}


def test_health_check(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


# ─── auth ───

def test_missing_telegram_id_is_401(client):
    response = client.get("/api/habits")
    assert response.status_code == 401
    assert response.json()["error"] == "unauthenticated"


def test_non_numeric_telegram_id_is_401(client):
    response = client.get("/api/habits", headers={"X-Telegram-Id": "abc"})
    assert response.status_code == 401


def test_first_contact_creates_user(client, db):
    response = client.get("/api/habits", headers={"X-Telegram-Id": "555"})
    assert response.status_code == 200
    assert response.json() == []
    assert db.query(User).filter(User.telegram_id == 555).count() == 1


# ─── habits ───

def test_habit_lifecycle(client):
    created = client.post("/api/habits", json={"name": "  Read  "}, headers=HEADERS)
    assert created.status_code == 201
    habit = created.json()
    assert habit["name"] == "Read"
    assert habit["isCompletedToday"] is False
    assert habit["streak"] == 0

    toggled = client.post(f"/api/habits/{habit['id']}/complete", headers=HEADERS)
    assert toggled.json() == {"completed": True, "streak": 1}

    listed = client.get("/api/habits", headers=HEADERS).json()
    assert listed[0]["isCompletedToday"] is True

    stats = client.get(f"/api/habits/{habit['id']}/stats", headers=HEADERS).json()
    assert stats["habitName"] == "Read"
    assert len(stats["last7Days"]) == 7
    assert stats["last7Days"][-1] == {"date": "2025-03-10", "completed": True}

    updated = client.put(f"/api/habits/{habit['id']}", json={"description": "20 pages"}, headers=HEADERS)
    assert updated.status_code == 200
    assert updated.json()["description"] == "20 pages"
    assert updated.json()["streak"] == 1

    untoggled = client.post(f"/api/habits/{habit['id']}/complete", headers=HEADERS)
    assert untoggled.json() == {"completed": False, "streak": 0}

    deleted = client.delete(f"/api/habits/{habit['id']}", headers=HEADERS)
    assert deleted.json() == {"success": True}
    assert client.get("/api/habits", headers=HEADERS).json() == []


def test_fourth_habit_needs_upgrade(client):
    for name in ("a", "b", "c"):
        assert client.post("/api/habits", json={"name": name}, headers=HEADERS).status_code == 201

    response = client.post("/api/habits", json={"name": "d"}, headers=HEADERS)

    assert response.status_code == 403
    body = response.json()
    assert body["error"] == "limit_exceeded"
    assert body["upgradeRequired"] is True
    assert body["limit"] == 3
    assert body["current"] == 3


def test_reminder_needs_premium(client):
    response = client.post("/api/habits", json={"name": "Run", "reminderEnabled": True,
                                                "reminderTime": "07:00"}, headers=HEADERS)
    assert response.status_code == 403
    assert response.json()["error"] == "premium_required"


def test_invalid_reminder_time_is_422(client):
    response = client.post("/api/habits", json={"name": "Run", "reminderTime": "7:00"}, headers=HEADERS)
    assert response.status_code == 422


def test_other_users_habit_is_404(client):
    habit = client.post("/api/habits", json={"name": "Mine"}, headers=HEADERS).json()
    response = client.post(f"/api/habits/{habit['id']}/complete", headers={"X-Telegram-Id": "222"})
    assert response.status_code == 404


# ─── subscription ───

def test_plans(client):
    plans = client.get("/api/subscription/plans").json()["plans"]
    assert [p["id"] for p in plans] == ["month", "year"]
    assert plans[0]["durationDays"] == 30


def test_payment_flow_with_webhook(client, db, gateway):
    created = client.post("/api/subscription/create-payment", json={"planId": "month"},
                          headers=dict(HEADERS, **{"Idempotence-Key": "abc-123"}))
    assert created.status_code == 200
    payment = created.json()
    assert payment["confirmationUrl"] == "https://yoomoney.ru/checkout/yk-1"
    assert gateway.created[0]["idempotence_key"] == "abc-123"

    gateway.set_status("yk-1", "succeeded")
    ack = client.post("/api/payments/webhook",
                      json={"type": "payment.succeeded", "object": {"id": "yk-1", "status": "succeeded"}})
    assert ack.json() == {"received": True}

    status = client.get("/api/subscription/status", headers=HEADERS).json()
    assert status["subscriptionType"] == "premium"
    assert status["subscriptionStatus"] == "active"
    assert status["daysRemaining"] == 30
    assert status["recentPayments"][0]["status"] == "succeeded"

    latest = client.get("/api/subscription/payment/latest/status", headers=HEADERS).json()
    assert latest == {"hasPayment": True, "paymentId": payment["paymentId"], "status": "succeeded",
                      "subscriptionActive": True, "message": None}


def test_payment_status_pull(client, db, gateway):
    payment = client.post("/api/subscription/create-payment", json={"planId": "year"},
                          headers=HEADERS).json()
    gateway.set_status(payment["yookassaId"], "succeeded")

    response = client.get(f"/api/subscription/payment/{payment['paymentId']}/status", headers=HEADERS)

    assert response.json() == {"paymentId": payment["paymentId"], "status": "succeeded",
                               "subscriptionActive": True}


def test_invalid_plan_is_400(client):
    response = client.post("/api/subscription/create-payment", json={"planId": "forever"}, headers=HEADERS)
    assert response.status_code == 400


def test_gateway_down_is_503(client, gateway):
    gateway.unavailable = True
    response = client.post("/api/subscription/create-payment", json={"planId": "month"}, headers=HEADERS)
    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_unreadable_gateway_reply_on_pull_is_503(client, user, make_payment, mocker):
    payment = make_payment(user)
    api = mocker.Mock()
    api.find_one.side_effect = json.JSONDecodeError("Expecting value", "<html>oops</html>", 0)
    main.app.dependency_overrides[main.get_gateway] = lambda: YooKassaClient("123456", "test_secret", api=api)

    response = client.get(f"/api/subscription/payment/{payment.id}/status", headers=HEADERS)

    assert response.status_code == 503
    assert response.json()["retryable"] is True


def test_webhook_with_garbage_is_acknowledged(client, db):
    response = client.post("/api/payments/webhook", content=b"not json",
                           headers={"Content-Type": "application/json"})
    assert response.json() == {"received": True}
    assert db.query(Payment).count() == 0


# ─── cron ───

def test_cron_requires_secret(client):
    assert client.post("/api/cron/expire-subscriptions").status_code == 401
    assert client.post("/api/reminders/send", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_cron_endpoints(client):
    expired = client.post("/api/cron/expire-subscriptions", headers=CRON)
    assert expired.status_code == 200
    assert expired.json()["processed"] == 0

    swept = client.post("/api/cron/reconcile-payments", headers=CRON)
    assert swept.json()["failed"] == 0

    reminders = client.post("/api/reminders/send", headers=CRON)
    assert reminders.json()["sent"] == 0
    assert reminders.json()["success"] is True
