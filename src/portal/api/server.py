"""HTTP shell: Discord login, code linking, bearer checks, and the Stripe webhook."""

import asyncio
import json
import logging
from urllib.parse import urlencode

from aiohttp import web

from portal.access.tokens import TokenIssuer
from portal.api.webhooks import handle_webhook
from portal.auth.pipeline import AccessOutcome, AccessPipeline
from portal.config.settings import AppConfig
from portal.errors import (
    AccessDeniedError,
    NotFoundError,
    ProviderError,
    TokenValidationError,
)
from portal.payments.provider import PaymentGateway

logger = logging.getLogger(__name__)

PIPELINE = web.AppKey("pipeline", AccessPipeline)
PAYMENTS = web.AppKey("payments", PaymentGateway)
CONFIG = web.AppKey("config", AppConfig)

# Redirect error codes understood by the frontend
ACCESS_DENIED = "access_denied"
NO_CODE = "no_code"
AUTH_FAILED = "auth_failed"


def _redirect(config: AppConfig, **params) -> web.HTTPFound:
    return web.HTTPFound(f"{config.frontend_url}?{urlencode(params)}")


def _bearer_token(request: web.Request) -> str | None:
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _prior_account_id(request: web.Request, issuer: TokenIssuer) -> str | None:
    """Account id from a still-valid credential the caller already holds."""
    token = _bearer_token(request)
    if token is None:
        return None
    try:
        return issuer.verify(token).account_id
    except TokenValidationError:
        return None


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return {}
    return body if isinstance(body, dict) else {}


def _outcome_response(outcome: AccessOutcome, denied_status: int = 403) -> web.Response:
    status = 200 if outcome.granted else denied_status
    return web.json_response(outcome.to_response(), status=status)


def _error(status: int, error: str, message: str) -> web.Response:
    return web.json_response({"error": error, "message": message}, status=status)


async def discord_callback(request: web.Request) -> web.Response:
    """Handle GET /auth/discord/callback (browser redirect from Discord)."""
    config = request.app[CONFIG]
    pipeline = request.app[PIPELINE]

    if request.query.get("error"):
        logger.info(f"Discord authorization refused: {request.query['error']}")
        raise _redirect(config, error=ACCESS_DENIED)

    code = request.query.get("code")
    if not code:
        raise _redirect(config, error=NO_CODE)

    try:
        outcome = await pipeline.login_with_discord(code)
    except ProviderError as e:
        logger.error(f"Discord login failed: {e}")
        raise _redirect(config, error=AUTH_FAILED)

    if not outcome.granted:
        raise _redirect(config, error=outcome.error)
    raise _redirect(
        config,
        token=outcome.token,
        user=json.dumps(outcome.account.public_profile()),
    )


async def discord_login(request: web.Request) -> web.Response:
    """Handle POST /auth/discord {code}."""
    pipeline = request.app[PIPELINE]
    body = await _json_body(request)

    try:
        outcome = await pipeline.login_with_discord(
            body.get("code"), _prior_account_id(request, pipeline.issuer)
        )
    except NotFoundError as e:
        return _error(400, NO_CODE, e.message)
    except ProviderError as e:
        logger.error(f"Discord login failed: {e}")
        return _error(502, AUTH_FAILED, "Authentication failed")
    return _outcome_response(outcome)


async def code_link(request: web.Request) -> web.Response:
    """Handle POST /auth/code {verification_code, code?}.

    code is an optional Discord authorization code; with it the caller's
    Discord identity is bound to the account holding the verification code.
    """
    pipeline = request.app[PIPELINE]
    body = await _json_body(request)

    try:
        outcome = await pipeline.link_with_code(body.get("verification_code"), body.get("code"))
    except NotFoundError as e:
        return _error(400, NO_CODE, e.message)
    except ProviderError as e:
        logger.error(f"Discord linking failed: {e}")
        return _error(502, AUTH_FAILED, "Authentication failed")
    if not outcome.granted and outcome.account is None:
        return _outcome_response(outcome, denied_status=400)
    return _outcome_response(outcome)


async def payment_login(request: web.Request) -> web.Response:
    """Handle POST /auth/payment {session_id} after Stripe Checkout redirects back."""
    pipeline = request.app[PIPELINE]
    body = await _json_body(request)

    try:
        outcome = await pipeline.complete_payment(body.get("session_id"))
    except NotFoundError as e:
        return _error(400, NO_CODE, e.message)
    except ProviderError as e:
        logger.error(f"Checkout session lookup failed: {e}")
        return _error(502, AUTH_FAILED, "Could not confirm payment")
    if outcome is None:
        return _error(404, "not_found", "No subscription found for this checkout")
    return _outcome_response(outcome)


async def current_user(request: web.Request) -> web.Response:
    """Handle GET /auth/me; re-applies the access gate."""
    pipeline = request.app[PIPELINE]
    token = _bearer_token(request)
    if token is None:
        return _error(401, "invalid_token", "Access token required")

    try:
        account = await pipeline.check_access(token)
    except (TokenValidationError, NotFoundError) as e:
        return _error(401, "invalid_token", e.message)
    except AccessDeniedError as e:
        return _error(403, e.code, e.message)
    return web.json_response(account.public_profile())


async def subscription_status(request: web.Request) -> web.Response:
    """Handle GET /auth/subscription; refreshes the caller's record from Stripe."""
    pipeline = request.app[PIPELINE]
    token = _bearer_token(request)
    if token is None:
        return _error(401, "invalid_token", "Access token required")

    try:
        status = await pipeline.subscription_status(token)
    except (TokenValidationError, NotFoundError) as e:
        return _error(401, "invalid_token", e.message)
    return web.json_response(status)


async def logout(request: web.Request) -> web.Response:
    """Handle POST /auth/logout (credentials are dropped client-side)."""
    return web.json_response({"message": "Logged out successfully"})


async def webhook_endpoint(request: web.Request) -> web.Response:
    """Handle POST /webhooks/stripe."""
    # Get signature header
    sig_header = request.headers.get("Stripe-Signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header")
        return web.Response(status=400, text="Missing signature")

    # Read raw payload
    payload = await request.read()

    config = request.app[CONFIG]
    return await handle_webhook(
        payload,
        sig_header,
        config.stripe_webhook_secret.get_secret_value(),
        request.app[PIPELINE],
        request.app[PAYMENTS],
    )


def create_app(
    pipeline: AccessPipeline,
    payments: PaymentGateway,
    config: AppConfig,
) -> web.Application:
    """Create the aiohttp application.

    Args:
        pipeline: Access pipeline shared by every route
        payments: Payment gateway for webhook reads
        config: Application config

    Returns:
        Configured aiohttp Application
    """
    app = web.Application()
    app[PIPELINE] = pipeline
    app[PAYMENTS] = payments
    app[CONFIG] = config

    app.router.add_get("/auth/discord/callback", discord_callback)
    app.router.add_post("/auth/discord", discord_login)
    app.router.add_post("/auth/code", code_link)
    app.router.add_post("/auth/payment", payment_login)
    app.router.add_get("/auth/me", current_user)
    app.router.add_get("/auth/subscription", subscription_status)
    app.router.add_post("/auth/logout", logout)
    app.router.add_post("/webhooks/stripe", webhook_endpoint)
    return app


async def run_server(
    app: web.Application,
    config: AppConfig,
    shutdown_event: asyncio.Event | None = None,
) -> None:
    """Run the HTTP server until shutdown is signalled."""
    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.server_host, config.server_port)
    await site.start()

    logger.info(f"Portal server listening on {config.server_host}:{config.server_port}")

    # Wait for shutdown signal
    if shutdown_event:
        await shutdown_event.wait()
    else:
        # Run forever if no shutdown event provided
        await asyncio.Event().wait()

    # Cleanup
    logger.info("Shutting down portal server...")
    await runner.cleanup()
