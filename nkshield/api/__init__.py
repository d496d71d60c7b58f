"""HTTP API route registration."""

from aiohttp import web

from nkshield.api import admin, auth, kv, public

ROUTE_MODULES = [kv, admin, auth, public]


def setup_routes(app: web.Application) -> None:
    for module in ROUTE_MODULES:
        module.setup_routes(app)
