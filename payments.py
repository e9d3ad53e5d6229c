"""
Payment gateway adapters.

Exactly one provider is active at a time. ``RazorpayGateway`` is the
order-based flow (client returns order id, payment id and an HMAC signature);
``StripeGateway`` is the intent-based flow (client completes a PaymentIntent,
the server re-reads its status). Both return provider-agnostic
``PaymentSession`` / ``PaymentVerification`` / ``WebhookEvent`` values so the
order code never touches provider fields.

The server-validated cart snapshot travels in provider metadata (Stripe
``metadata`` / Razorpay ``notes``), so a webhook can create the order without
trusting anything the client re-sends.
"""

import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import requests
import stripe

from errors import InvalidSignature, PaymentVerificationFailed, UpstreamError, ValidationError
from models import PAYMENT_METHODS

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "orderData"


@dataclass
class PaymentSession:
    provider: str
    provider_ref: str
    amount: int
    currency: str
    client_fields: dict = field(default_factory=dict)


@dataclass
class PaymentVerification:
    verified: bool
    provider: str
    correlation_id: str
    provider_order_id: str
    amount: int
    currency: str
    method: str = "card"
    metadata: dict = field(default_factory=dict)


@dataclass
class WebhookEvent:
    kind: str  # payment_succeeded | payment_failed | ignored
    event_type: str
    verification: Optional[PaymentVerification] = None
    reason: str = ""


def encode_snapshot(snapshot, max_value_length, max_keys):
    """Spread a JSON snapshot over as many metadata values as it needs."""
    payload = json.dumps(snapshot, separators=(",", ":"), sort_keys=True)
    if len(payload) <= max_value_length:
        return {SNAPSHOT_KEY: payload}
    parts = [payload[i:i + max_value_length] for i in range(0, len(payload), max_value_length)]
    if len(parts) + 1 > max_keys:
        raise ValidationError("Cart is too large to check out in one order")
    notes = {f"{SNAPSHOT_KEY}_{i}": part for i, part in enumerate(parts)}
    notes[f"{SNAPSHOT_KEY}Parts"] = str(len(parts))
    return notes


def decode_snapshot(notes):
    notes = notes or {}
    if SNAPSHOT_KEY in notes:
        payload = notes[SNAPSHOT_KEY]
    elif f"{SNAPSHOT_KEY}Parts" in notes:
        count = int(notes[f"{SNAPSHOT_KEY}Parts"])
        try:
            payload = "".join(notes[f"{SNAPSHOT_KEY}_{i}"] for i in range(count))
        except KeyError as e:
            raise PaymentVerificationFailed("Payment metadata is incomplete") from e
    else:
        raise PaymentVerificationFailed("Payment is missing its order data")
    try:
        return json.loads(payload)
    except ValueError as e:
        raise PaymentVerificationFailed("Payment order data is unreadable") from e


def _proof_field(proof, *names):
    for name in names:
        value = proof.get(name)
        if value:
            return value
    raise PaymentVerificationFailed(f"Payment proof is missing {names[0]}")


def _normalise_method(method):
    return method if method in PAYMENT_METHODS else "card"


class PaymentGateway(ABC):
    name = ""
    signature_header = ""

    @abstractmethod
    def create_payment(self, amount, currency, snapshot, idempotency_key) -> PaymentSession:
        """Create the provider-side payment object for ``amount`` minor units."""

    @abstractmethod
    def verify(self, proof) -> PaymentVerification:
        """Check a client-submitted payment proof; raise on anything but a successful charge."""

    @abstractmethod
    def parse_webhook(self, body: bytes, signature) -> WebhookEvent:
        """Authenticate and decode a provider webhook delivery."""


class RazorpayGateway(PaymentGateway):
    name = "razorpay"
    signature_header = "X-Razorpay-Signature"
    api_base = "https://api.razorpay.com/v1"

    # Razorpay allows 15 notes of at most 256 characters
    max_note_length = 256
    max_notes = 15

    def __init__(self, key_id, key_secret, webhook_secret, timeout=10, session=None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._http = session or requests.Session()
        self._http.auth = (key_id, key_secret)

    def _request(self, method, path, **kwargs):
        url = f"{self.api_base}{path}"
        try:
            resp = self._http.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            logger.error(f"Razorpay {method} {path} failed: {e}")
            raise UpstreamError("Payment provider is unavailable") from e
        if resp.status_code >= 400:
            logger.error(f"Razorpay {method} {path} returned {resp.status_code}: {resp.text[:200]}")
            raise UpstreamError("Payment provider rejected the request")
        return resp.json()

    def create_payment(self, amount, currency, snapshot, idempotency_key):
        notes = {"customerId": str(snapshot["customerId"])}
        notes.update(encode_snapshot(snapshot, self.max_note_length, self.max_notes - 1))
        order = self._request("POST", "/orders", json={
            "amount": amount,
            "currency": currency,
            # receipt is capped at 40 characters by the provider
            "receipt": idempotency_key[:40],
            "notes": notes,
        })
        return PaymentSession(
            provider=self.name,
            provider_ref=order["id"],
            amount=order["amount"],
            currency=order["currency"],
            client_fields={
                "providerOrderId": order["id"],
                "amount": order["amount"],
                "currency": order["currency"],
                "key": self.key_id,
            },
        )

    def expected_signature(self, order_id, payment_id):
        message = f"{order_id}|{payment_id}".encode("utf-8")
        return hmac.new(self.key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def verify_signature(self, order_id, payment_id, signature):
        if not hmac.compare_digest(self.expected_signature(order_id, payment_id), signature or ""):
            raise InvalidSignature("Payment verification failed. Invalid signature.")

    def _verification(self, payment, order):
        if payment.get("status") not in ("captured", "authorized"):
            raise PaymentVerificationFailed("Payment not successful", paymentStatus=payment.get("status"))
        return PaymentVerification(
            verified=True,
            provider=self.name,
            correlation_id=payment["id"],
            provider_order_id=order["id"],
            amount=int(payment["amount"]),
            currency=payment.get("currency", order.get("currency", "")),
            method=_normalise_method(payment.get("method")),
            metadata=decode_snapshot(order.get("notes")),
        )

    def verify(self, proof):
        order_id = _proof_field(proof, "razorpayOrderId", "razorpay_order_id")
        payment_id = _proof_field(proof, "razorpayPaymentId", "razorpay_payment_id")
        signature = _proof_field(proof, "razorpaySignature", "razorpay_signature")
        self.verify_signature(order_id, payment_id, signature)

        payment = self._request("GET", f"/payments/{payment_id}")
        if payment.get("order_id") != order_id:
            raise PaymentVerificationFailed("Payment does not belong to this order")
        order = self._request("GET", f"/orders/{order_id}")
        return self._verification(payment, order)

    def parse_webhook(self, body, signature):
        expected = hmac.new(self.webhook_secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature or ""):
            raise InvalidSignature("Webhook signature verification failed")
        try:
            envelope = json.loads(body)
        except ValueError as e:
            raise InvalidSignature("Webhook body is not valid JSON") from e

        event_type = envelope.get("event", "")
        payload = envelope.get("payload") or {}
        payment = (payload.get("payment") or {}).get("entity") or {}

        if event_type in ("payment.captured", "order.paid"):
            order = (payload.get("order") or {}).get("entity")
            if not order or "notes" not in order:
                order = self._request("GET", f"/orders/{payment['order_id']}")
            return WebhookEvent("payment_succeeded", event_type, self._verification(payment, order))
        if event_type == "payment.failed":
            return WebhookEvent("payment_failed", event_type, reason=payment.get("error_description") or "")
        return WebhookEvent("ignored", event_type)


def _metadata_dict(metadata):
    if metadata is None:
        return {}
    if isinstance(metadata, dict):
        return dict(metadata)
    return metadata.to_dict()


class StripeGateway(PaymentGateway):
    name = "stripe"
    signature_header = "Stripe-Signature"

    # Stripe allows 50 metadata keys with values up to 500 characters
    max_note_length = 500
    max_notes = 50

    def __init__(self, secret_key, publishable_key, webhook_secret, timeout=10):
        self.secret_key = secret_key
        self.publishable_key = publishable_key
        self.webhook_secret = webhook_secret
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def create_payment(self, amount, currency, snapshot, idempotency_key):
        metadata = {"customerId": str(snapshot["customerId"])}
        metadata.update(encode_snapshot(snapshot, self.max_note_length, self.max_notes - 1))
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent creation failed: {e}")
            raise UpstreamError("Payment provider rejected the request") from e
        return PaymentSession(
            provider=self.name,
            provider_ref=intent.id,
            amount=intent.amount,
            currency=intent.currency,
            client_fields={
                "clientSecret": intent.client_secret,
                "paymentIntentId": intent.id,
                "publishableKey": self.publishable_key,
            },
        )

    def _verification(self, intent):
        if intent.status != "succeeded":
            raise PaymentVerificationFailed("Payment not successful", paymentStatus=intent.status)
        return PaymentVerification(
            verified=True,
            provider=self.name,
            correlation_id=intent.id,
            provider_order_id=intent.id,
            amount=int(intent.amount),
            currency=intent.currency,
            method="card",
            metadata=decode_snapshot(_metadata_dict(intent.metadata)),
        )

    def verify(self, proof):
        intent_id = _proof_field(proof, "paymentIntentId", "payment_intent_id")
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=self.secret_key)
        except stripe.InvalidRequestError as e:
            raise PaymentVerificationFailed("Unknown payment") from e
        except stripe.StripeError as e:
            logger.error(f"Stripe PaymentIntent retrieve failed for {intent_id}: {e}")
            raise UpstreamError("Payment provider is unavailable") from e
        return self._verification(intent)

    def parse_webhook(self, body, signature):
        try:
            event = stripe.Webhook.construct_event(body, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Webhook signature verification failed") from e
        except ValueError as e:
            raise InvalidSignature("Webhook body is not valid JSON") from e

        intent = event.data.object
        if event.type == "payment_intent.succeeded":
            return WebhookEvent("payment_succeeded", event.type, self._verification(intent))
        if event.type == "payment_intent.payment_failed":
            error = getattr(intent, "last_payment_error", None)
            reason = getattr(error, "message", "") if error else ""
            return WebhookEvent("payment_failed", event.type, reason=reason or "")
        return WebhookEvent("ignored", event.type)


def build_gateway(settings) -> PaymentGateway:
    if settings.payment_provider == "razorpay":
        return RazorpayGateway(
            settings.razorpay_key_id, settings.razorpay_key_secret,
            settings.razorpay_webhook_secret, timeout=settings.payment_timeout_seconds,
        )
    if settings.payment_provider == "stripe":
        return StripeGateway(
            settings.stripe_secret_key, settings.stripe_publishable_key,
            settings.stripe_webhook_secret, timeout=settings.payment_timeout_seconds,
        )
    raise ValueError(f"Unsupported payment provider: {settings.payment_provider}")
