"""aiohttp application factory."""

import logging
from typing import Awaitable, Callable, Optional

from aiohttp import web

from nkshield.api import setup_routes
from nkshield.api.common import SERVICES
from nkshield.config import ServiceConfig
from nkshield.errors import AuthorizationError, NkShieldError, StoreUnavailableError, ValidationError
from nkshield.honeytokens import seed_honeytokens
from nkshield.pipeline import DefensePipeline, defense_middleware
from nkshield.services import DefenseServices
from nkshield.store import KVStore, create_store

logger = logging.getLogger("nkshield.app")


@web.middleware
async def error_middleware(request: web.Request, handler) -> web.StreamResponse:
    """Convert exceptions into JSON errors without leaking internals."""
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ValidationError as e:
        return web.json_response({"error": str(e) or "Invalid request"}, status=400)
    except AuthorizationError:
        return web.json_response({"error": "Unauthorized"}, status=403)
    except StoreUnavailableError as e:
        logger.error(f"Store unavailable while handling {request.path}: {e}")
        return web.json_response({"error": "Service Unavailable"}, status=503)
    except NkShieldError as e:
        logger.error(f"Error handling {request.path}: {e}")
        return web.json_response({"error": "Internal server error"}, status=500)
    except Exception:
        logger.exception(f"Unhandled error for {request.method} {request.path}")
        return web.json_response({"error": "Internal server error"}, status=500)


async def _seed_honeytokens(app: web.Application) -> None:
    services = app[SERVICES]
    try:
        seeded = await seed_honeytokens(services.store)
        if seeded:
            logger.info(f"Seeded {seeded} honeytoken decoys")
    except NkShieldError as e:
        logger.warning(f"Honeytoken seeding skipped: {e}")


async def _close_services(app: web.Application) -> None:
    await app[SERVICES].close()


def create_app(
    config: ServiceConfig,
    store: Optional[KVStore] = None,
    sleep: Optional[Callable[[float], Awaitable[None]]] = None,
) -> web.Application:
    """
    Build the application with the defense middleware and API routes.

    Args:
        config: Service configuration
        store: KV store (built from config.redis_url when omitted)
        sleep: Tarpit sleep function (asyncio.sleep when omitted)

    Returns:
        Configured aiohttp application
    """
    services = DefenseServices(config=config, store=store or create_store(config.redis_url))
    if sleep is not None:
        services.sleep = sleep

    app = web.Application(
        middlewares=[error_middleware, defense_middleware(DefensePipeline(services))]
    )
    app[SERVICES] = services
    setup_routes(app)
    app.on_startup.append(_seed_honeytokens)
    app.on_cleanup.append(_close_services)
    return app
