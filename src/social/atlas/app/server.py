import asyncio
import contextlib
import logging
from time import time
from typing import NoReturn, Optional

import aiohttp
from aiohttp import web
import redis.asyncio as redis
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.atlas.app.config import (
    CacheAppKey,
    HealthGaugeAppKey,
    LoaderAppKey,
    MetricsClientAppKey,
    RedisClientAppKey,
    RegistryAppKey,
    ResolverAppKey,
    SchemaResolverAppKey,
    SessionAppKey,
    Settings,
    SettingsAppKey,
    build_cache,
    build_registry,
)
from social.atlas.app.handlers.internal import (
    handle_internal_alive,
    handle_internal_ready,
    handle_resolve,
)
from social.atlas.app.handlers.lexicon import handle_validate
from social.atlas.app.handlers.records import (
    handle_appview_profile,
    handle_blob,
    handle_chat_index,
    handle_chat_thread,
    handle_describe,
    handle_profile,
    handle_record,
    handle_records,
    handle_search,
)
from social.atlas.app.metrics import create_metrics_client
from social.atlas.atproto.content import ContentLoader
from social.atlas.atproto.snapshot import create_snapshot
from social.atlas.errors import ResolutionFailed
from social.atlas.lexicon.resolve import SchemaResolver
from social.atlas.model.health import HealthGauge
from social.atlas.resolve.handle import IdentityResolver

logger = logging.getLogger(__name__)

HEALTH_DECAY_INTERVAL = 30


async def tick_health_task(app: web.Application) -> NoReturn:
    """
    Decay the health gauge every 30 seconds.
    """

    logger.info("Starting health gauge task")

    health_gauge = app[HealthGaugeAppKey]
    while True:
        await health_gauge.decay()
        await asyncio.sleep(HEALTH_DECAY_INTERVAL)


def trace_config_for(settings: Settings) -> aiohttp.TraceConfig:
    trace_config = aiohttp.TraceConfig()

    if settings.debug:

        async def on_request_start(
            session, trace_config_ctx, params: aiohttp.TraceRequestStartParams
        ):
            logging.info("Starting request: %s %s", params.method, params.url)

        async def on_request_end(
            session, trace_config_ctx, params: aiohttp.TraceRequestEndParams
        ):
            logging.info(
                "Ending request: %s %s %s",
                params.method,
                params.url,
                params.response.status,
            )

        trace_config.on_request_start.append(on_request_start)
        trace_config.on_request_end.append(on_request_end)

    return trace_config


async def background_tasks(app):
    logger.info("Starting up")
    settings: Settings = app[SettingsAppKey]

    session = aiohttp.ClientSession(trace_configs=[trace_config_for(settings)])
    app[SessionAppKey] = session

    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        prefix=settings.statsd_prefix,
        debug=settings.debug,
    )
    await metrics_client.connect()
    app[MetricsClientAppKey] = metrics_client

    redis_client: Optional[redis.Redis] = None
    if settings.cache_backend == "redis":
        redis_client = redis.Redis.from_url(str(settings.redis_dsn))
        app[RedisClientAppKey] = redis_client
    cache = build_cache(settings, redis_client)
    app[CacheAppKey] = cache

    registry = app[RegistryAppKey]
    resolver = IdentityResolver(
        session,
        registry,
        pinned_handles=settings.pinned_handles,
        timeout=settings.resolve_timeout,
        cache=cache,
        metrics_client=metrics_client,
        infra_suffixes=settings.infra_suffixes,
    )
    app[ResolverAppKey] = resolver

    app[LoaderAppKey] = ContentLoader(
        session,
        resolver,
        snapshot=create_snapshot(settings.content_root, session),
        cache=cache,
        timeout=settings.fetch_timeout,
        local_only_dids=settings.local_only_dids,
        metrics_client=metrics_client,
    )

    app[SchemaResolverAppKey] = SchemaResolver(
        session,
        resolver,
        dns_backend=settings.dns_backend,
        doh_url=settings.doh_url,
        timeout=settings.fetch_timeout,
        metrics_client=metrics_client,
    )

    logger.info("Startup complete")

    health_task = asyncio.create_task(tick_health_task(app))

    yield

    logger.info("Shutting down")

    health_task.cancel()
    with contextlib.suppress(asyncio.exceptions.CancelledError):
        await health_task

    await session.close()
    if redis_client is not None:
        await redis_client.aclose()
    await metrics_client.close()


@web.middleware
async def error_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except ResolutionFailed as e:
        logger.info("Could not resolve for %s: %s", request.path, e)
        return web.json_response({"error": "could not resolve"}, status=502)
    except web.HTTPException:
        raise
    except Exception as e:
        logger.exception("Unexpected error handling %s %s", request.method, request.path)
        await request.app[HealthGaugeAppKey].record_error(type(e).__name__)
        raise e


@web.middleware
async def sentry_middleware(request: web.Request, handler):
    try:
        response = await handler(request)
        return response
    except web.HTTPException:
        raise
    except Exception as e:
        sentry_sdk.capture_exception(e)
        raise e


@web.middleware
async def statsd_middleware(request: web.Request, handler):
    metrics_client = request.app[MetricsClientAppKey]
    request_method: str = request.method
    request_path = request.path

    start_time: float = time()
    response_status_code = 0

    try:
        response = await handler(request)
        response_status_code = response.status
        return response
    except web.HTTPException as e:
        response_status_code = e.status
        raise e
    except Exception as e:
        metrics_client.increment(
            "atlas.server.request.exception",
            1,
            tag_dict={
                "exception": type(e).__name__,
                "path": request_path,
                "method": request_method,
            },
        )
        raise e
    finally:
        metrics_client.timer(
            "atlas.server.request.time",
            time() - start_time,
            tag_dict={"path": request_path, "method": request_method},
        )
        metrics_client.increment(
            "atlas.server.request.count",
            1,
            tag_dict={
                "path": request_path,
                "method": request_method,
                "status": response_status_code,
            },
        )


def add_routes(app: web.Application) -> None:
    app.add_routes(
        [
            web.get("/internal/alive", handle_internal_alive),
            web.get("/internal/ready", handle_internal_ready),
        ]
    )

    app.add_routes(
        [
            web.get("/api/resolve", handle_resolve),
            web.get("/api/profile", handle_profile),
            web.get("/api/record", handle_record),
            web.get("/api/records", handle_records),
            web.get("/api/describe", handle_describe),
            web.get("/api/blob", handle_blob),
            web.get("/api/appview-profile", handle_appview_profile),
            web.get("/api/search", handle_search),
            web.get("/api/chat", handle_chat_index),
            web.get("/api/chat/{rkey}", handle_chat_thread),
            web.post("/api/validate", handle_validate),
        ]
    )


async def start_web_server(settings: Optional[Settings] = None):

    if settings is None:
        settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=True,
            integrations=[AioHttpIntegration()],
        )
    app = web.Application(
        middlewares=[statsd_middleware, sentry_middleware, error_middleware]
    )

    app[SettingsAppKey] = settings
    app[RegistryAppKey] = build_registry(settings)
    app[HealthGaugeAppKey] = HealthGauge()

    add_routes(app)

    app.cleanup_ctx.append(background_tasks)

    return app
