"""Application entry point."""

import asyncio
import logging
import signal
import sys

import asyncpg
from aiohttp import web

from portal.access.tokens import TokenIssuer
from portal.api.server import create_app, run_server
from portal.auth.pipeline import AccessPipeline
from portal.community.roles import CommunityRoleService, build_role_service
from portal.community.sync import CommunitySyncAgent
from portal.config import AppConfig, get_config
from portal.db.pool import close_pool, create_pool
from portal.db.store import PostgresAccountStore
from portal.identity.discord import DiscordOAuthClient
from portal.identity.resolver import IdentityResolver
from portal.payments.linker import SubscriptionLinker
from portal.payments.provider import StripePayments

logger = logging.getLogger(__name__)


def build_app(
    config: AppConfig, pool: asyncpg.Pool
) -> tuple[web.Application, CommunitySyncAgent | None, CommunityRoleService | None]:
    """
    Wire every collaborator explicitly from config.

    Raises:
        ConfigurationError: If a required secret or endpoint is missing
    """
    config.require("stripe_webhook_secret")
    store = PostgresAccountStore(pool)
    payments = StripePayments(config)
    oauth = DiscordOAuthClient(config)

    roles = None
    sync = None
    if config.community_paid_role_id:
        roles = build_role_service(config)
        sync = CommunitySyncAgent(roles, config, joiner=oauth)
    else:
        logger.warning("COMMUNITY_PAID_ROLE_ID not set - community role sync disabled")

    pipeline = AccessPipeline(
        resolver=IdentityResolver(store, payments, config),
        linker=SubscriptionLinker(store, payments, config),
        issuer=TokenIssuer(config),
        config=config,
        sync=sync,
        oauth=oauth,
        payments=payments,
    )
    return create_app(pipeline, payments, config), sync, roles


async def serve(config: AppConfig, shutdown_event: asyncio.Event) -> None:
    """
    Boot sequence: pool -> collaborators -> HTTP server -> drain -> shutdown.

    Raises:
        SystemExit: On configuration or database errors
    """
    try:
        pool = await create_pool(config)
        logger.info(
            f"Database pool initialized: min={config.db_pool_min}, max={config.db_pool_max}"
        )
    except Exception as e:
        logger.error(f"Boot sequence failed: {e}")
        raise SystemExit(1) from e

    try:
        app, sync, roles = build_app(config, pool)
        await run_server(app, config, shutdown_event)
        if sync is not None:
            await sync.drain()
        if roles is not None:
            await roles.close()
    finally:
        await close_pool(pool)
        logger.info("Application shutdown complete")


def main() -> None:
    """Main entry point with logging configuration."""
    # Configure logging
    config = get_config()
    logging.basicConfig(
        level=config.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info(f"Configuration loaded: env={config.env}")

    shutdown_event = asyncio.Event()

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        shutdown_event.set()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    try:
        asyncio.run(serve(config, shutdown_event))
    except SystemExit:
        raise
    except Exception as e:
        logging.error(f"Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
