"""Stripe webhook handler and event processing."""

import logging

import stripe
from aiohttp import web

from portal.auth.pipeline import AccessOutcome, AccessPipeline
from portal.payments.provider import PaymentGateway, ProviderSubscription

logger = logging.getLogger(__name__)

SUBSCRIPTION_EVENTS = (
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
)
INVOICE_EVENTS = (
    "invoice.paid",
    "invoice.payment_succeeded",
    "invoice.payment_failed",
)


async def handle_webhook(
    payload: bytes,
    sig_header: str,
    webhook_secret: str,
    pipeline: AccessPipeline,
    payments: PaymentGateway,
) -> web.Response:
    """Handle and verify Stripe webhook events.

    Verifies the webhook signature, turns the event into the provider's
    current view of the subscription, and hands it to the access pipeline.

    Args:
        payload: Raw webhook payload bytes
        sig_header: Stripe-Signature header value
        webhook_secret: Endpoint signing secret
        pipeline: Access pipeline that links and reconciles the subscription
        payments: Payment gateway used to read the subscription

    Returns:
        aiohttp.web.Response (200 for success, 400 for bad input, 500 to request a retry)
    """
    # Verify webhook signature
    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        logger.error("Invalid webhook payload")
        return web.Response(status=400, text="Invalid payload")
    except stripe.SignatureVerificationError:
        logger.error("Invalid webhook signature")
        return web.Response(status=400, text="Invalid signature")

    event_type = event["type"]
    logger.info(f"Received webhook: {event_type}")

    # Route event to handler
    try:
        obj = event["data"]["object"]
        if event_type == "checkout.session.completed":
            state = await _checkout_state(obj, payments)
        elif event_type in SUBSCRIPTION_EVENTS:
            state = await payments.retrieve_subscription(obj["id"])
        elif event_type in INVOICE_EVENTS:
            state = await _invoice_state(obj, payments)
        else:
            # Unknown event type - acknowledge but don't process
            logger.info(f"Unhandled event type: {event_type}")
            return web.Response(status=200, text="OK")

        if state is None:
            return web.Response(status=200, text="OK")

        outcome = await pipeline.apply_payment(state)
        _log_outcome(event_type, state, outcome)
        return web.Response(status=200, text="OK")

    except Exception as e:
        logger.exception(f"Error processing webhook {event_type}: {e}")
        # Return 500 so Stripe will retry
        return web.Response(status=500, text="Internal error")


async def _checkout_state(
    session: dict, payments: PaymentGateway
) -> ProviderSubscription | None:
    """Handle checkout.session.completed.

    The session's client_reference_id carries the Discord user id of the
    caller who started checkout.
    """
    subscription_id = session.get("subscription")
    if not subscription_id:
        logger.warning("checkout.session.completed without a subscription - skipping")
        return None

    state = await payments.retrieve_subscription(subscription_id)
    state.client_reference_id = session.get("client_reference_id")
    if not state.customer_email:
        state.customer_email = (session.get("customer_details") or {}).get("email")
    return state


def _invoice_subscription_id(invoice: dict) -> str | None:
    subscription_id = invoice.get("subscription")
    if subscription_id:
        return subscription_id if isinstance(subscription_id, str) else subscription_id.get("id")
    # Newer API versions nest it under parent.subscription_details
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return details.get("subscription")


async def _invoice_state(
    invoice: dict, payments: PaymentGateway
) -> ProviderSubscription | None:
    """Handle invoice.paid / invoice.payment_succeeded / invoice.payment_failed.

    The invoice only says something happened; the subscription is re-read so
    its status reflects the result.
    """
    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        logger.warning(f"Invoice {invoice.get('id')} has no subscription - skipping")
        return None
    return await payments.retrieve_subscription(subscription_id)


def _log_outcome(
    event_type: str, state: ProviderSubscription, outcome: AccessOutcome | None
) -> None:
    if outcome is None:
        logger.info(f"{event_type}: subscription {state.id} skipped")
    elif outcome.granted:
        logger.info(
            f"{event_type}: subscription {state.id} ({state.status}) "
            f"entitles account {outcome.account.id}"
        )
    else:
        logger.info(
            f"{event_type}: subscription {state.id} ({state.status}) "
            f"no longer entitles account {outcome.account.id}"
        )
