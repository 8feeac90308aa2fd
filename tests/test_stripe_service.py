from types import SimpleNamespace

import pytest
import stripe

from storefront import stripe_service
from storefront.errors import GatewayError, MismatchError


@pytest.fixture
def order():
    return SimpleNamespace(id="order-1", user_id="user-1", total=6940)


def test_create_intent_charges_stored_total(order, mocker):
    mock_pi = mocker.Mock()
    mock_pi.id = "pi_123"
    mock_pi.client_secret = "secret_123"
    mock_pi.status = "requires_payment_method"
    create = mocker.patch("stripe.PaymentIntent.create", return_value=mock_pi)

    handle = stripe_service.create_intent(order)

    assert handle == stripe_service.IntentHandle("pi_123", "secret_123", "requires_payment_method")
    kwargs = create.call_args.kwargs
    assert kwargs["amount"] == 6940
    assert kwargs["metadata"]["order_id"] == "order-1"
    assert kwargs["idempotency_key"] == "order-order-1-0"


def test_create_intent_wraps_processor_errors(order, mocker):
    mocker.patch(
        "stripe.PaymentIntent.create",
        side_effect=stripe.APIConnectionError("Stripe Service Unavailable"),
    )
    with pytest.raises(GatewayError):
        stripe_service.create_intent(order)


def test_create_intent_is_not_retried(order, mocker):
    create = mocker.patch("stripe.PaymentIntent.create", side_effect=stripe.APIError("boom"))
    with pytest.raises(GatewayError):
        stripe_service.create_intent(order)
    assert create.call_count == 1


def test_confirm_intent_success(make_intent, mocker):
    intent = make_intent("pi_1", "order-1", 6940)
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)

    assert stripe_service.confirm_intent("pi_1", "order-1", 6940) is intent


def test_confirm_intent_rejects_other_order(make_intent, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=make_intent("pi_1", "order-2", 6940))
    with pytest.raises(MismatchError):
        stripe_service.confirm_intent("pi_1", "order-1", 6940)


def test_confirm_intent_rejects_intent_without_binding(make_intent, mocker):
    intent = make_intent("pi_1", "order-1", 6940)
    intent.metadata = {}
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=intent)
    with pytest.raises(MismatchError):
        stripe_service.confirm_intent("pi_1", "order-1", 6940)


def test_confirm_intent_rejects_amount_mismatch(make_intent, mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", return_value=make_intent("pi_1", "order-1", 100))
    with pytest.raises(MismatchError):
        stripe_service.confirm_intent("pi_1", "order-1", 6940)


def test_confirm_intent_requires_success(make_intent, mocker):
    mocker.patch(
        "stripe.PaymentIntent.retrieve",
        return_value=make_intent("pi_1", "order-1", 6940, status="requires_payment_method"),
    )
    with pytest.raises(GatewayError, match="not completed"):
        stripe_service.confirm_intent("pi_1", "order-1", 6940)


def test_confirm_intent_processor_down(mocker):
    mocker.patch("stripe.PaymentIntent.retrieve", side_effect=stripe.APIConnectionError("down"))
    with pytest.raises(GatewayError):
        stripe_service.confirm_intent("pi_1", "order-1", 6940)


def test_refund_intent(mocker):
    refund = mocker.patch("stripe.Refund.create", return_value=mocker.Mock())
    stripe_service.refund_intent("pi_1")
    refund.assert_called_once_with(payment_intent="pi_1")
