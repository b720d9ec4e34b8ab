import logging

from aiohttp import web

from social.atlas.app.config import HealthGaugeAppKey, ResolverAppKey
from social.atlas.app.handlers.helpers import query_param

logger = logging.getLogger(__name__)


async def handle_internal_ready(request: web.Request):
    health_gauge = request.app[HealthGaugeAppKey]
    status = 200 if await health_gauge.is_healthy() else 503
    return web.json_response(await health_gauge.snapshot(), status=status)


async def handle_internal_alive(request: web.Request):
    return web.Response(status=200)


async def handle_resolve(request: web.Request):
    """Resolve a handle or DID to its identity and network endpoints.

    Resolution failures propagate to the error middleware, which answers 502.
    """
    subject = query_param(request, "subject")
    resolver = request.app[ResolverAppKey]

    identity = await resolver.resolve_identity(subject)
    endpoints = resolver.endpoints_for(identity.repo_host)
    return web.json_response(
        {
            **identity.model_dump(),
            "network": endpoints.model_dump(),
        }
    )
