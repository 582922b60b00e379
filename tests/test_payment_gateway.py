import json
from decimal import Decimal
from types import SimpleNamespace

import pytest
import requests
from yookassa import Configuration
from yookassa.domain.exceptions.api_error import ApiError
from yookassa.domain.exceptions.forbidden_error import ForbiddenError

from errors import UpstreamUnavailable
from models import PaymentStatus
from payment_gateway import YooKassaClient

PAYMENT_ID = "2d6f1b1c-000f-5000-9000-1b2c3d4e5f60"


def sdk_payment(status="pending", payment_method=None, **overrides):
    """Same attributes the SDK's PaymentResponse exposes"""
    fields = dict(
        id=PAYMENT_ID,
        status=status,
        amount=SimpleNamespace(value=Decimal("99.00"), currency="RUB"),
        confirmation=SimpleNamespace(
            type="redirect",
            confirmation_url="https://yoomoney.ru/checkout/payments/v2/contract?orderId=1",
        ),
        payment_method=payment_method,
        metadata={"planId": "month"},
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


@pytest.fixture
def api(mocker):
    return mocker.Mock()


@pytest.fixture
def client(api):
    return YooKassaClient("123456", "test_secret", api=api)


def test_credentials_go_to_sdk_configuration(client):
    assert Configuration.account_id == "123456"
    assert Configuration.secret_key == "test_secret"


def test_create_payment_request_shape(client, api):
    api.create.return_value = sdk_payment()

    payment = client.create_payment(
        amount=Decimal("99"), currency="RUB", description="Suscripción",
        return_url="https://app.example.com?payment=success",
        metadata={"userId": 7, "planId": "month"}, idempotence_key="key-1",
    )

    params, key = api.create.call_args.args
    assert key == "key-1"
    assert params == {
        "amount": {"value": "99.00", "currency": "RUB"},
        "description": "Suscripción",
        "capture": True,
        "confirmation": {"type": "redirect", "return_url": "https://app.example.com?payment=success"},
        "metadata": {"userId": "7", "planId": "month"},
    }
    assert payment.id == PAYMENT_ID
    assert payment.status == PaymentStatus.pending
    assert payment.amount == Decimal("99.00")
    assert payment.currency == "RUB"
    assert payment.confirmation_url.startswith("https://yoomoney.ru/")


def test_get_payment_reads_method(client, api):
    api.find_one.return_value = sdk_payment("succeeded", payment_method=SimpleNamespace(type="sbp", id="x"))

    payment = client.get_payment(PAYMENT_ID)

    api.find_one.assert_called_once_with(PAYMENT_ID)
    assert payment.status == PaymentStatus.succeeded
    assert payment.payment_method == "sbp"


def test_unknown_status_counts_as_pending(client, api):
    api.find_one.return_value = sdk_payment("weird")
    assert client.get_payment("x").status == PaymentStatus.pending


def test_server_errors_are_retryable(client, api):
    api.find_one.side_effect = ApiError("Service Unavailable")
    with pytest.raises(UpstreamUnavailable) as exc:
        client.get_payment("x")
    assert exc.value.to_dict()["retryable"] is True


def test_rejected_requests_are_not_retryable(client, api):
    api.find_one.side_effect = ForbiddenError({"type": "error", "code": "forbidden"})
    with pytest.raises(UpstreamUnavailable) as exc:
        client.get_payment("x")
    assert exc.value.to_dict()["retryable"] is False


def test_network_error_is_upstream_unavailable(client, api):
    api.create.side_effect = requests.ConnectionError("connection refused")
    with pytest.raises(UpstreamUnavailable) as exc:
        client.create_payment(Decimal("99"), "RUB", "x", "https://app.example.com", {}, "key")
    assert exc.value.to_dict()["retryable"] is True


def test_non_json_reply_is_upstream_unavailable(client, api):
    api.find_one.side_effect = json.JSONDecodeError("Expecting value", "<html>oops</html>", 0)
    with pytest.raises(UpstreamUnavailable) as exc:
        client.get_payment("x")
    assert exc.value.to_dict()["retryable"] is True


def test_reply_without_id_is_upstream_unavailable(client, api):
    api.find_one.return_value = sdk_payment("succeeded", id=None)
    with pytest.raises(UpstreamUnavailable):
        client.get_payment("x")


def test_missing_credentials(api):
    client = YooKassaClient("", "", api=api)
    assert client.configured is False
    with pytest.raises(UpstreamUnavailable):
        client.get_payment("x")
    api.find_one.assert_not_called()
