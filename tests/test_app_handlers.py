"""
Tests for the HTTP API

The application is assembled with the production routes and middlewares;
the resolver, loader and schema resolver are mocks so that only request
handling, parameter parsing and error mapping are exercised.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp import test_utils

from social.atlas.app.config import (
    HealthGaugeAppKey,
    LoaderAppKey,
    MetricsClientAppKey,
    RegistryAppKey,
    ResolverAppKey,
    SchemaResolverAppKey,
    Settings,
    SettingsAppKey,
)
from social.atlas.app.metrics import MetricsClient
from social.atlas.app.server import (
    add_routes,
    error_middleware,
    sentry_middleware,
    statsd_middleware,
)
from social.atlas.atproto.content import ContentLoader
from social.atlas.errors import ResolutionFailed
from social.atlas.lexicon.resolve import SchemaResolver, Stage, ValidationOutcome
from social.atlas.model.health import HealthGauge
from social.atlas.model.network import NetworkEndpoints
from social.atlas.model.record import (
    ChatMessage,
    Identity,
    Record,
    RecordPage,
    RepoDescription,
)
from social.atlas.resolve.handle import IdentityResolver

USER = "did:plc:user"
BOT = "did:plc:bot"


def chat(author, rkey, minute, root=None, **value):
    body = {
        "author": author,
        "createdAt": f"2024-05-01T10:{minute:02d}:00Z",
        "content": f"{author}-{rkey}",
        **value,
    }
    if root is not None:
        body["root"] = root
    return ChatMessage(uri=f"at://{author}/ai.syui.log.chat/{rkey}", cid=rkey, value=body)


@pytest.fixture
def resolver():
    resolver = AsyncMock(spec=IdentityResolver)
    resolver.resolve_handle_to_did.return_value = USER
    resolver.resolve_identity.return_value = Identity(
        did=USER, handle="user.alpha.test", repo_host="https://pds.alpha.test"
    )
    resolver.endpoints_for.return_value = NetworkEndpoints(
        repo_host_url="https://pds.alpha.test",
        directory_url="https://plc.alpha.test",
        profile_api_url="https://api.alpha.test",
        web_url="https://web.alpha.test",
    )
    return resolver


@pytest.fixture
def loader():
    return AsyncMock(spec=ContentLoader)


@pytest.fixture
def schema_resolver():
    return AsyncMock(spec=SchemaResolver)


@pytest.fixture
def metrics_client():
    return Mock(spec=MetricsClient)


@pytest.fixture
def settings():
    return Settings(bot_did=BOT, user_did=USER, default_lang="ja")


@pytest.fixture
def health_gauge():
    return HealthGauge(threshold=2)


@pytest_asyncio.fixture
async def client(
    settings, registry, resolver, loader, schema_resolver, metrics_client, health_gauge
):
    app = web.Application(
        middlewares=[statsd_middleware, sentry_middleware, error_middleware]
    )
    app[SettingsAppKey] = settings
    app[RegistryAppKey] = registry
    app[ResolverAppKey] = resolver
    app[LoaderAppKey] = loader
    app[SchemaResolverAppKey] = schema_resolver
    app[MetricsClientAppKey] = metrics_client
    app[HealthGaugeAppKey] = health_gauge
    add_routes(app)

    client = test_utils.TestClient(test_utils.TestServer(app))
    await client.start_server()
    yield client
    await client.close()


class TestInternal:
    """Test suite for the liveness and readiness endpoints."""

    @pytest.mark.asyncio
    async def test_alive(self, client):
        """Test the liveness endpoint."""
        resp = await client.get("/internal/alive")
        assert resp.status == 200

    @pytest.mark.asyncio
    async def test_ready(self, client, health_gauge):
        """Test readiness follows the health gauge."""
        resp = await client.get("/internal/ready")
        assert resp.status == 200
        assert (await resp.json())["score"] == 0

        for _ in range(3):
            await health_gauge.record_error("RuntimeError")
        resp = await client.get("/internal/ready")
        assert resp.status == 503
        assert (await resp.json())["errors"] == {"RuntimeError": 3}


class TestResolve:
    """Test suite for /api/resolve."""

    @pytest.mark.asyncio
    async def test_resolve(self, client, resolver):
        """Test identity and network endpoints are returned."""
        resp = await client.get("/api/resolve", params={"subject": "user.alpha.test"})

        assert resp.status == 200
        body = await resp.json()
        assert body["did"] == USER
        assert body["network"]["directory_url"] == "https://plc.alpha.test"
        resolver.resolve_identity.assert_awaited_once_with("user.alpha.test")

    @pytest.mark.asyncio
    async def test_missing_subject(self, client):
        """Test the subject parameter is required."""
        resp = await client.get("/api/resolve")

        assert resp.status == 400
        assert await resp.json() == {"error": "missing parameter: subject"}

    @pytest.mark.asyncio
    async def test_could_not_resolve(self, client, resolver, metrics_client):
        """Test resolution failures answer 502 without touching readiness."""
        resolver.resolve_identity.side_effect = ResolutionFailed.handle("nobody.test")

        resp = await client.get("/api/resolve", params={"subject": "nobody.test"})

        assert resp.status == 502
        assert await resp.json() == {"error": "could not resolve"}
        metrics_client.increment.assert_any_call(
            "atlas.server.request.count",
            1,
            tag_dict={"path": "/api/resolve", "method": "GET", "status": 502},
        )


class TestRecords:
    """Test suite for the record endpoints."""

    @pytest.mark.asyncio
    async def test_profile(self, client, loader):
        """Test profiles are served by DID."""
        loader.get_profile.return_value = Record(
            uri=f"at://{USER}/app.bsky.actor.profile/self", value={"displayName": "User"}
        )

        resp = await client.get("/api/profile", params={"subject": "user.alpha.test"})

        assert resp.status == 200
        assert (await resp.json())["value"] == {"displayName": "User"}
        loader.get_profile.assert_awaited_once_with(USER, local_only=False)

    @pytest.mark.asyncio
    async def test_profile_missing(self, client, loader):
        """Test absent profiles answer 404."""
        loader.get_profile.return_value = None

        resp = await client.get("/api/profile", params={"subject": USER, "local": "1"})

        assert resp.status == 404
        assert await resp.json() == {"error": "profile not found", "did": USER}
        loader.get_profile.assert_awaited_once_with(USER, local_only=True)

    @pytest.mark.asyncio
    async def test_record(self, client, loader):
        """Test a single record."""
        loader.get_record.return_value = Record(
            uri=f"at://{USER}/app.bsky.feed.post/3k", cid="bafy", value={"text": "hi"}
        )

        resp = await client.get(
            "/api/record",
            params={"subject": USER, "collection": "app.bsky.feed.post", "rkey": "3k"},
        )

        assert resp.status == 200
        assert (await resp.json())["cid"] == "bafy"
        loader.get_record.assert_awaited_once_with(
            USER, "app.bsky.feed.post", "3k", local_only=False
        )

    @pytest.mark.asyncio
    async def test_record_missing_collection(self, client, loader):
        """Test collection and rkey are required."""
        resp = await client.get("/api/record", params={"subject": USER, "rkey": "3k"})

        assert resp.status == 400
        loader.get_record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_records(self, client, loader):
        """Test listing passes a clamped limit and the cursor through."""
        loader.list_records.return_value = RecordPage(
            records=[Record(uri=f"at://{USER}/app.bsky.feed.post/a")], cursor="next"
        )

        resp = await client.get(
            "/api/records",
            params={"subject": USER, "collection": "app.bsky.feed.post", "limit": "500", "cursor": "c1"},
        )

        assert resp.status == 200
        assert (await resp.json())["cursor"] == "next"
        loader.list_records.assert_awaited_once_with(
            USER, "app.bsky.feed.post", limit=100, cursor="c1", local_only=False
        )

    @pytest.mark.asyncio
    async def test_records_bad_limit(self, client):
        """Test non-numeric limits are rejected."""
        resp = await client.get(
            "/api/records",
            params={"subject": USER, "collection": "app.bsky.feed.post", "limit": "lots"},
        )
        assert resp.status == 400

    @pytest.mark.asyncio
    async def test_describe(self, client, loader):
        """Test repository descriptions use wire names."""
        loader.describe_repo.return_value = RepoDescription(
            did=USER, handle="user.alpha.test", collections=["app.bsky.feed.post"], did_doc={"id": USER}
        )

        resp = await client.get("/api/describe", params={"subject": USER})

        assert resp.status == 200
        assert (await resp.json())["didDoc"] == {"id": USER}

    @pytest.mark.asyncio
    async def test_blob(self, client, loader):
        """Test blobs are served as raw bytes."""
        loader.get_blob.return_value = b"\x89PNG"

        resp = await client.get("/api/blob", params={"subject": USER, "cid": "bafkblob"})

        assert resp.status == 200
        assert resp.content_type == "application/octet-stream"
        assert await resp.read() == b"\x89PNG"

    @pytest.mark.asyncio
    async def test_blob_missing(self, client, loader):
        """Test absent blobs answer 404."""
        loader.get_blob.return_value = None

        resp = await client.get("/api/blob", params={"subject": USER, "cid": "bafkblob"})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_unexpected_error(self, client, loader, health_gauge, metrics_client):
        """Test unexpected errors answer 500, are reported and count against readiness."""
        loader.get_profile.side_effect = RuntimeError("boom")

        with patch("social.atlas.app.server.sentry_sdk") as sentry:
            resp = await client.get("/api/profile", params={"subject": USER})

        assert resp.status == 500
        assert health_gauge.score == 1
        sentry.capture_exception.assert_called_once()
        metrics_client.increment.assert_any_call(
            "atlas.server.request.exception",
            1,
            tag_dict={"exception": "RuntimeError", "path": "/api/profile", "method": "GET"},
        )


class TestAppView:
    """Test suite for the AppView profile and URL search endpoints."""

    @pytest.mark.asyncio
    async def test_profile(self, client, loader, resolver):
        """Test the hydrated profile view is returned as-is."""
        view = {"did": USER, "handle": "user.alpha.test", "followersCount": 3}
        loader.get_appview_profile.return_value = view

        resp = await client.get("/api/appview-profile", params={"subject": "user.alpha.test"})

        assert resp.status == 200
        assert await resp.json() == view
        resolver.resolve_handle_to_did.assert_awaited_once_with("user.alpha.test")
        loader.get_appview_profile.assert_awaited_once_with(USER)

    @pytest.mark.asyncio
    async def test_profile_missing(self, client, loader):
        """Test a DID unknown to every AppView answers 404."""
        loader.get_appview_profile.return_value = None

        resp = await client.get("/api/appview-profile", params={"subject": USER})

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_search_default_appview(self, client, loader):
        """Test searches go to the public AppView unless a network is named."""
        posts = [{"uri": "at://did:plc:user/app.bsky.feed.post/1", "record": {}}]
        loader.search_posts_for_url.return_value = posts

        resp = await client.get("/api/search", params={"url": "https://example.com/a"})

        assert resp.status == 200
        assert await resp.json() == {"posts": posts}
        loader.search_posts_for_url.assert_awaited_once_with(
            "https://example.com/a", api_url="https://public.api.bsky.app"
        )

    @pytest.mark.asyncio
    async def test_search_network(self, client, loader):
        """Test a named network searches that network's AppView."""
        loader.search_posts_for_url.return_value = []

        resp = await client.get(
            "/api/search", params={"url": "https://example.com", "network": "beta.test"}
        )

        assert resp.status == 200
        loader.search_posts_for_url.assert_awaited_once_with(
            "https://example.com", api_url="https://api.beta.test"
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "params", [{}, {"url": "https://example.com", "network": "gamma.test"}]
    )
    async def test_search_bad_request(self, client, loader, params):
        """Test a missing url or an unknown network answers 400."""
        resp = await client.get("/api/search", params=params)

        assert resp.status == 400
        loader.search_posts_for_url.assert_not_awaited()


class TestChat:
    """Test suite for the chat endpoints."""

    @pytest.mark.asyncio
    async def test_index(self, client, loader):
        """Test the thread index lists one entry per thread."""
        root = chat(USER, "r", 0, lang="ja", translations={"en": {"content": "hello"}})
        loader.get_chat_messages.return_value = [
            root,
            chat(BOT, "b", 1, root=root.uri),
            chat(USER, "o", 2, root=f"at://{USER}/ai.syui.log.chat/gone"),
        ]

        resp = await client.get("/api/chat", params={"lang": "en"})

        assert resp.status == 200
        body = await resp.json()
        assert [entry["rkey"] for entry in body] == ["o", "r"]
        assert body[0]["orphaned"] is True
        assert body[0]["originalRoot"] == f"at://{USER}/ai.syui.log.chat/gone"
        assert body[1]["content"] == "hello"
        loader.get_chat_messages.assert_awaited_once_with(USER, BOT, "ai.syui.log.chat")

    @pytest.mark.asyncio
    async def test_index_for_subject(self, client, loader, resolver):
        """Test a subject overrides the configured user."""
        resolver.resolve_handle_to_did.return_value = "did:plc:other"
        loader.get_chat_messages.return_value = []

        resp = await client.get("/api/chat", params={"subject": "other.alpha.test"})

        assert resp.status == 200
        assert await resp.json() == []
        loader.get_chat_messages.assert_awaited_once_with("did:plc:other", BOT, "ai.syui.log.chat")

    @pytest.mark.asyncio
    async def test_thread(self, client, loader):
        """Test a thread is returned oldest first."""
        root = chat(USER, "r", 0)
        loader.get_chat_messages.return_value = [
            chat(USER, "u", 2, root=root.uri),
            chat(BOT, "b", 1, root=root.uri),
            root,
        ]

        resp = await client.get("/api/chat/r")

        assert resp.status == 200
        body = await resp.json()
        assert [entry["rkey"] for entry in body] == ["r", "b", "u"]
        assert body[0]["lang"] == "ja"

    @pytest.mark.asyncio
    async def test_thread_missing(self, client, loader):
        """Test unknown threads answer 404."""
        loader.get_chat_messages.return_value = [chat(USER, "r", 0)]

        resp = await client.get("/api/chat/nothing")

        assert resp.status == 404

    @pytest.mark.asyncio
    async def test_not_configured(self, client, settings, loader):
        """Test chat needs a bot DID."""
        settings.bot_did = None

        resp = await client.get("/api/chat")

        assert resp.status == 404
        loader.get_chat_messages.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_user(self, client, settings):
        """Test a subject is required when no user is configured."""
        settings.user_did = None

        resp = await client.get("/api/chat")

        assert resp.status == 400


class TestValidate:
    """Test suite for /api/validate."""

    @pytest.mark.asyncio
    async def test_valid(self, client, schema_resolver):
        """Test the outcome is returned without empty fields."""
        schema_resolver.validate.return_value = ValidationOutcome.valid("com.example.widget")
        record = {"$type": "com.example.widget", "name": "gizmo"}

        resp = await client.post(
            "/api/validate", json={"collection": "com.example.widget", "record": record}
        )

        assert resp.status == 200
        assert await resp.json() == {"state": "valid", "lexicon_id": "com.example.widget"}
        schema_resolver.validate.assert_awaited_once_with("com.example.widget", record)

    @pytest.mark.asyncio
    async def test_failed(self, client, schema_resolver):
        """Test discovery failures are reported in the body with their stage."""
        schema_resolver.validate.return_value = ValidationOutcome.failed(
            "com.example.widget", Stage.DnsLookup, "no record"
        )

        resp = await client.post(
            "/api/validate", json={"collection": "com.example.widget", "record": {}}
        )

        assert resp.status == 200
        assert await resp.json() == {
            "state": "failed",
            "lexicon_id": "com.example.widget",
            "stage": "DnsLookup",
            "reason": "no record",
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            "not json",
            "[1, 2]",
            '{"record": {}}',
            '{"collection": "com.example.widget"}',
            '{"collection": "com.example.widget", "record": "x"}',
            b"\xff\xfe{}",
        ],
    )
    async def test_bad_request(self, client, schema_resolver, body):
        """Test malformed bodies answer 400."""
        resp = await client.post(
            "/api/validate", data=body, headers={"content-type": "application/json"}
        )

        assert resp.status == 400
        schema_resolver.validate.assert_not_awaited()
