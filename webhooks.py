"""
Payment provider webhooks.

Webhooks are a backup path for order creation: the provider may deliver the
same event zero, one or many times, and the materializer's duplicate check
makes every delivery after the first a no-op. Only a bad signature is answered
with an error (so the provider retries); everything else is acknowledged and
logged.
"""

import logging

from errors import InvalidSignature

logger = logging.getLogger(__name__)


class PaymentWebhookReceiver:
    def __init__(self, gateway, materializer):
        self.gateway = gateway
        self.materializer = materializer

    def handle(self, session, body, signature):
        try:
            event = self.gateway.parse_webhook(body, signature)
        except InvalidSignature:
            logger.error(f"{self.gateway.name} webhook signature verification failed")
            raise
        except Exception:
            logger.exception(f"Could not read {self.gateway.name} webhook")
            return {"ack": True}

        logger.info(f"Received {self.gateway.name} webhook {event.event_type}")
        try:
            if event.kind == "payment_succeeded":
                order, created = self.materializer.materialize_verified(session, event.verification)
                if created:
                    logger.info(f"Webhook created order {order.order_number}")
            elif event.kind == "payment_failed":
                logger.warning(f"Payment failed ({event.event_type}): {event.reason or 'no reason given'}")
            else:
                logger.info(f"Unhandled webhook event type {event.event_type}")
        except Exception:
            session.rollback()
            logger.exception(f"Error processing {self.gateway.name} webhook {event.event_type}")
        return {"ack": True}
