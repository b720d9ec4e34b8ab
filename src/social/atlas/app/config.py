"""
Configuration Module for the Atlas Service

Settings are read from the environment with pydantic-settings. Shared
resources (the HTTP session, the network registry, the resolvers, loaders,
caches and metrics client) are created once at startup and handed to
request handlers through typed aiohttp AppKeys.

Key configuration areas include:
- Service networking and debugging
- The network registry and pinned handles
- The local content mirror and local-only identities
- Timeouts and the TTL cache
- Lexicon DNS discovery
- Monitoring and error reporting
"""

from typing import Annotated, Dict, Final, List, Literal, Optional
import logging

from aiohttp import ClientSession, web
from pydantic import AliasChoices, Field, RedisDsn, field_validator
from pydantic_settings import BaseSettings, NoDecode
from redis import asyncio as redis

from social.atlas.app.metrics import MetricsClient
from social.atlas.atproto.cache import DEFAULT_TTL, MemoryTTLCache, RedisTTLCache, TTLCache
from social.atlas.atproto.content import ContentLoader
from social.atlas.atproto.xrpc import FETCH_TIMEOUT, IDENTITY_TIMEOUT
from social.atlas.lexicon.resolve import DEFAULT_DOH_URL, SchemaResolver
from social.atlas.model.health import HealthGauge
from social.atlas.model.network import NetworkRegistry
from social.atlas.model.record import DEFAULT_CHAT_COLLECTION
from social.atlas.resolve.handle import DEFAULT_INFRA_SUFFIXES, IdentityResolver


logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """
    Application settings for the Atlas service.

    Environment variables map onto fields by name; list fields accept
    comma-separated values and mapping fields accept JSON objects.
    """

    debug: bool = False
    """
    Enable debug mode for verbose logging and request tracing.
    Set with DEBUG=true environment variable.
    """

    http_port: int = Field(alias="port", default=5100)
    """
    HTTP port for the service to listen on.
    Set with PORT environment variable.
    """

    networks_file: Optional[str] = None
    """
    Path to a JSON file mapping network keys to {plc, bsky, web, pds} endpoints.
    The built-in registry is used when unset.
    Set with NETWORKS_FILE environment variable.
    """

    pinned_handles: Dict[str, str] = Field(default_factory=dict)
    """
    JSON object of handle -> network key. Pinned handles are resolved against
    their network first.
    Set with PINNED_HANDLES environment variable.
    """

    content_root: Optional[str] = None
    """
    Directory or base URL of the local content mirror. Consulted before any
    remote request.
    Set with CONTENT_ROOT environment variable.
    """

    local_only_dids: Annotated[List[str], NoDecode] = list()
    """
    DIDs whose content is only ever served from the local mirror.
    Set with LOCAL_ONLY_DIDS environment variable as comma-separated values.
    """

    user_did: Optional[str] = None
    """DID of the user whose chat log is served by /api/chat"""

    bot_did: Optional[str] = None
    """DID of the bot that answers in the chat log"""

    chat_collection: str = DEFAULT_CHAT_COLLECTION
    """Collection holding chat messages in both repositories"""

    default_lang: str = "ja"
    """Language assumed for chat messages that do not declare one"""

    resolve_timeout: float = IDENTITY_TIMEOUT
    """
    Timeout in seconds for each identity lookup (handle, DID document, describeRepo).
    Set with RESOLVE_TIMEOUT environment variable.
    """

    fetch_timeout: float = FETCH_TIMEOUT
    """
    Timeout in seconds for record, listing, blob and schema requests.
    Set with FETCH_TIMEOUT environment variable.
    """

    cache_backend: Literal["memory", "redis"] = "memory"
    """
    Backend for the short-lived response cache.
    Set with CACHE_BACKEND environment variable.
    """

    cache_ttl: float = DEFAULT_TTL
    """
    Lifetime in seconds of cached responses. Must be positive.
    Set with CACHE_TTL environment variable.
    """

    redis_dsn: RedisDsn = Field(
        "redis://valkey:6379/1?decode_responses=True",
        validation_alias=AliasChoices("redis_dsn", "redis_url"),
    )  # type: ignore
    """
    Redis connection string, used when CACHE_BACKEND=redis.
    Set with REDIS_DSN or REDIS_URL environment variables.
    """

    dns_backend: Literal["doh", "system"] = "doh"
    """
    How lexicon TXT records are looked up: DNS-over-HTTPS or the system resolver.
    Set with DNS_BACKEND environment variable.
    """

    doh_url: str = DEFAULT_DOH_URL
    """DNS-over-HTTPS JSON endpoint"""

    infra_suffixes: Dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_INFRA_SUFFIXES)
    )
    """
    JSON object of repository host suffix -> network key, used to map shared
    hosting infrastructure onto a network.
    Set with INFRA_SUFFIXES environment variable.
    """

    sentry_dsn: Optional[str] = None
    """
    Sentry DSN for error reporting. Optional, no error reporting if not set.
    Set with SENTRY_DSN environment variable.
    """

    metrics_backend: Literal["telegraf", "none"] = "telegraf"
    """
    Metrics backend. Set with METRICS_BACKEND environment variable.
    """

    statsd_host: str = Field(alias="TELEGRAF_HOST", default="telegraf")
    """
    StatsD/Telegraf host for metrics collection.
    Set with TELEGRAF_HOST environment variable.
    """

    statsd_port: int = Field(alias="TELEGRAF_PORT", default=8125)
    """
    StatsD/Telegraf port for metrics collection.
    Set with TELEGRAF_PORT environment variable.
    """

    statsd_prefix: str = "atlas"
    """
    Prefix for all StatsD metrics from this service.
    Set with STATSD_PREFIX environment variable.
    """

    @field_validator("local_only_dids", mode="before")
    @classmethod
    def split_local_only_dids(cls, v) -> List[str]:
        if isinstance(v, str):
            return [did.strip() for did in v.split(",") if len(did.strip()) > 0]
        if isinstance(v, (list, tuple)):
            return list(v)
        raise ValueError("local_only_dids must be a list or a comma-separated string")

    @field_validator("cache_ttl", mode="after")
    @classmethod
    def require_positive_ttl(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("cache_ttl must be positive")
        return v


def build_registry(settings: Settings) -> NetworkRegistry:
    """Network registry from NETWORKS_FILE, or the built-in one."""
    if settings.networks_file:
        registry = NetworkRegistry.from_file(settings.networks_file)
        logger.info(
            "Loaded %d networks from %s", len(registry), settings.networks_file
        )
        return registry
    return NetworkRegistry.default()


def build_cache(
    settings: Settings, redis_client: Optional[redis.Redis] = None
) -> TTLCache:
    if settings.cache_backend == "redis":
        if redis_client is None:
            raise ValueError("CACHE_BACKEND=redis requires a redis client")
        return RedisTTLCache(redis_client, default_ttl=settings.cache_ttl)
    return MemoryTTLCache(default_ttl=settings.cache_ttl)


# Application context keys for dependency injection
SettingsAppKey: Final = web.AppKey("settings", Settings)
"""AppKey for accessing the application settings"""

SessionAppKey: Final = web.AppKey("http_session", ClientSession)
"""AppKey for accessing the shared aiohttp client session"""

RedisClientAppKey: Final = web.AppKey("redis_client", redis.Redis)
"""AppKey for accessing the Redis client, present when CACHE_BACKEND=redis"""

CacheAppKey: Final = web.AppKey("cache", TTLCache)
"""AppKey for accessing the response cache"""

RegistryAppKey: Final = web.AppKey("registry", NetworkRegistry)
"""AppKey for accessing the network registry"""

ResolverAppKey: Final = web.AppKey("resolver", IdentityResolver)
"""AppKey for accessing the identity resolver"""

LoaderAppKey: Final = web.AppKey("loader", ContentLoader)
"""AppKey for accessing the content loader"""

SchemaResolverAppKey: Final = web.AppKey("schema_resolver", SchemaResolver)
"""AppKey for accessing the lexicon schema resolver"""

HealthGaugeAppKey: Final = web.AppKey("health_gauge", HealthGauge)
"""AppKey for accessing the health monitoring gauge"""

MetricsClientAppKey: Final = web.AppKey("metrics_client", MetricsClient)
"""AppKey for the metrics client"""
