"""Local-first, remote-fallback loading of repository content.

Every load consults the local snapshot first and returns it without touching
the network. Otherwise the DID's repository host is resolved and exactly one
request is sent to it. Missing content, unreachable hosts and unresolvable
identities all come back as ``None`` (or an empty page): absence is a normal
outcome for callers, not an error. Nothing here retries.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar
from urllib.parse import urlencode, urlparse

from aiohttp import ClientError, ClientSession
from pydantic import ValidationError

from social.atlas.app.metrics import MetricsClient, NoOpMetricsClient
from social.atlas.atproto.cache import TTLCache, cache_key
from social.atlas.atproto.snapshot import Snapshot
from social.atlas.atproto.xrpc import (
    DESCRIBE_REPO,
    FETCH_TIMEOUT,
    GET_BLOB,
    GET_PROFILE,
    GET_RECORD,
    LIST_RECORDS,
    SEARCH_POSTS,
    SEARCH_TIMEOUT,
    get_bytes,
    get_json,
    xrpc_url,
)
from social.atlas.errors import ResolutionFailed
from social.atlas.model.network import DEFAULT_PROFILE_API_URL
from social.atlas.model.record import (
    DEFAULT_CHAT_COLLECTION,
    PROFILE_COLLECTION,
    PROFILE_RKEY,
    ChatMessage,
    Record,
    RecordPage,
    RepoDescription,
    parse_datetime,
)
from social.atlas.resolve.handle import IdentityResolver

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 100
SEARCH_LIMIT = 20

RecordT = TypeVar("RecordT", bound=Record)


def _to_record(body: Any, model: Type[RecordT] = Record) -> Optional[RecordT]:
    if not isinstance(body, dict):
        return None
    try:
        return model.model_validate(body)
    except ValidationError:
        logger.warning("Discarding malformed record: %s", body.get("uri"))
        return None


def avatar_cid(profile: Optional[Record]) -> Optional[str]:
    """CID of a profile's avatar blob, if it has one."""
    if profile is None:
        return None
    avatar = profile.value.get("avatar")
    if not isinstance(avatar, dict):
        return None
    ref = avatar.get("ref")
    if isinstance(ref, dict) and isinstance(ref.get("$link"), str):
        return ref["$link"]
    if isinstance(avatar.get("cid"), str):
        return avatar["cid"]
    return None


def links_to(post: Any, url: str) -> bool:
    """True when a post view mentions ``url`` in its text or embeds it as a link card."""
    record = post.get("record") if isinstance(post, dict) else None
    if not isinstance(record, dict):
        return False
    text = record.get("text")
    if isinstance(text, str) and url in text:
        return True
    embed = record.get("embed")
    external = embed.get("external") if isinstance(embed, dict) else None
    uri = external.get("uri") if isinstance(external, dict) else None
    if not isinstance(uri, str):
        return False
    return uri == url or url.rstrip("/") in uri


class ContentLoader:
    """Loads profiles, records, listings, repo descriptions and blobs.

    DIDs listed in ``local_only_dids`` (the service's own identities, whose
    content is pre-synced) are never fetched remotely.
    """

    def __init__(
        self,
        session: ClientSession,
        resolver: IdentityResolver,
        snapshot: Optional[Snapshot] = None,
        cache: Optional[TTLCache] = None,
        timeout: float = FETCH_TIMEOUT,
        local_only_dids: Optional[List[str]] = None,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        self.session = session
        self.resolver = resolver
        self.snapshot = snapshot
        self.cache = cache
        self.timeout = timeout
        self.local_only_dids = frozenset(local_only_dids or [])
        self.metrics_client = metrics_client or NoOpMetricsClient()

    def _local_only(self, did: str, local_only: bool) -> bool:
        return local_only or did in self.local_only_dids

    def _track(self, kind: str, source: str) -> None:
        self.metrics_client.increment(
            "atlas.content.load", 1, tag_dict={"kind": kind, "source": source}
        )

    async def _cache_get(self, key: str) -> Optional[Any]:
        if self.cache is None:
            return None
        return await self.cache.get(key)

    async def _cache_set(self, key: str, value: Any) -> None:
        if self.cache is not None:
            await self.cache.set(key, value)

    async def _repo_host(self, did: str) -> Optional[str]:
        try:
            return await self.resolver.resolve_pds_for_did(did)
        except ResolutionFailed as e:
            logger.info("No repository host for %s: %s", did, e)
            return None

    async def _fetch_json(
        self, url: str, params: Dict[str, str], timeout: Optional[float] = None
    ) -> Optional[Any]:
        try:
            return await get_json(
                self.session, url, params=params, timeout=timeout or self.timeout
            )
        except (ClientError, TimeoutError, ValueError) as e:
            logger.debug("Fetch failed for %s %s: %r", url, params, e)
            return None

    async def get_record(
        self, did: str, collection: str, rkey: str, local_only: bool = False
    ) -> Optional[Record]:
        return await self._get_record(did, collection, rkey, local_only, Record)

    async def _get_record(
        self,
        did: str,
        collection: str,
        rkey: str,
        local_only: bool,
        model: Type[RecordT],
    ) -> Optional[RecordT]:
        if self.snapshot is not None:
            local = _to_record(
                await self.snapshot.read_record(did, collection, rkey), model
            )
            if local is not None:
                self._track("record", "local")
                return local

        if self._local_only(did, local_only):
            self._track("record", "none")
            return None

        key = cache_key("record", did, collection, rkey)
        cached = _to_record(await self._cache_get(key), model)
        if cached is not None:
            self._track("record", "cache")
            return cached

        pds = await self._repo_host(did)
        if pds is None:
            self._track("record", "none")
            return None

        body = await self._fetch_json(
            xrpc_url(pds, GET_RECORD),
            {"repo": did, "collection": collection, "rkey": rkey},
        )
        record = _to_record(body, model)
        if record is None:
            self._track("record", "none")
            return None

        await self._cache_set(key, body)
        self._track("record", "remote")
        return record

    async def get_profile(self, did: str, local_only: bool = False) -> Optional[Record]:
        return await self.get_record(did, PROFILE_COLLECTION, PROFILE_RKEY, local_only)

    async def list_records(
        self,
        did: str,
        collection: str,
        limit: int = 50,
        cursor: Optional[str] = None,
        local_only: bool = False,
    ) -> RecordPage:
        """List one page of a collection.

        The cursor is opaque; pass back the returned cursor to continue and stop
        when it is None.
        """
        return await self._list_records(did, collection, limit, cursor, local_only, Record)

    async def _list_local(
        self,
        did: str,
        collection: str,
        limit: int,
        cursor: Optional[str],
        model: Type[RecordT],
    ) -> Optional[RecordPage]:
        if self.snapshot is None:
            return None
        index = await self.snapshot.read_index(did, collection)
        if index is None:
            return None

        start = 0
        if cursor is not None:
            if cursor not in index:
                return RecordPage(records=[], cursor=None)
            start = index.index(cursor) + 1
        rkeys = index[start : start + limit]

        snapshot = self.snapshot
        async with asyncio.TaskGroup() as tg:
            tasks = [
                tg.create_task(snapshot.read_record(did, collection, rkey))
                for rkey in rkeys
            ]
        records = [
            record
            for record in (_to_record(task.result(), model) for task in tasks)
            if record is not None
        ]
        next_cursor = rkeys[-1] if len(rkeys) > 0 and start + limit < len(index) else None
        return RecordPage(records=records, cursor=next_cursor)

    async def _list_records(
        self,
        did: str,
        collection: str,
        limit: int,
        cursor: Optional[str],
        local_only: bool,
        model: Type[RecordT],
    ) -> RecordPage:
        limit = max(1, min(int(limit), MAX_LIST_LIMIT))

        local = await self._list_local(did, collection, limit, cursor, model)
        if local is not None:
            self._track("list", "local")
            return local

        if self._local_only(did, local_only):
            self._track("list", "none")
            return RecordPage()

        key = cache_key("list", did, collection, str(limit), cursor)
        body = await self._cache_get(key)
        source = "cache"
        if not isinstance(body, dict):
            pds = await self._repo_host(did)
            if pds is None:
                self._track("list", "none")
                return RecordPage()
            params = {"repo": did, "collection": collection, "limit": str(limit)}
            if cursor is not None:
                params["cursor"] = cursor
            body = await self._fetch_json(xrpc_url(pds, LIST_RECORDS), params)
            if not isinstance(body, dict):
                self._track("list", "none")
                return RecordPage()
            await self._cache_set(key, body)
            source = "remote"

        raw_records = body.get("records") or []
        records = [
            record
            for record in (_to_record(raw, model) for raw in raw_records)
            if record is not None
        ]
        next_cursor = body.get("cursor")
        self._track("list", source)
        return RecordPage(
            records=records,
            cursor=next_cursor if isinstance(next_cursor, str) and next_cursor else None,
        )

    async def get_posts(
        self, did: str, collection: str, local_only: bool = False
    ) -> List[Record]:
        """Up to one page of posts, newest first."""
        page = await self.list_records(
            did, collection, limit=MAX_LIST_LIMIT, local_only=local_only
        )
        return sorted(
            page.records, key=lambda record: (record.created_at, record.uri), reverse=True
        )

    async def describe_repo(
        self, did: str, local_only: bool = False
    ) -> Optional[RepoDescription]:
        if self.snapshot is not None:
            local = await self.snapshot.read_describe(did)
            if isinstance(local, dict):
                try:
                    description = RepoDescription.model_validate({"did": did, **local})
                    self._track("describe", "local")
                    return description
                except ValidationError:
                    logger.warning("Discarding malformed describe.json for %s", did)

        if self._local_only(did, local_only):
            self._track("describe", "none")
            return None

        key = cache_key("describe", did)
        body = await self._cache_get(key)
        source = "cache"
        if not isinstance(body, dict):
            pds = await self._repo_host(did)
            if pds is None:
                self._track("describe", "none")
                return None
            body = await self._fetch_json(xrpc_url(pds, DESCRIBE_REPO), {"repo": did})
            if not isinstance(body, dict):
                self._track("describe", "none")
                return None
            await self._cache_set(key, body)
            source = "remote"

        try:
            description = RepoDescription.model_validate({"did": did, **body})
        except ValidationError:
            logger.warning("Discarding malformed describeRepo response for %s", did)
            return None
        self._track("describe", source)
        return description

    async def get_blob(
        self, did: str, cid: str, local_only: bool = False
    ) -> Optional[bytes]:
        """Fetch a blob from the snapshot or directly from the repository host."""
        if self.snapshot is not None:
            local = await self.snapshot.read_blob(did, cid)
            if local is not None:
                self._track("blob", "local")
                return local

        if self._local_only(did, local_only):
            self._track("blob", "none")
            return None

        pds = await self._repo_host(did)
        if pds is None:
            self._track("blob", "none")
            return None

        try:
            blob = await get_bytes(
                self.session,
                xrpc_url(pds, GET_BLOB),
                params={"did": did, "cid": cid},
                timeout=self.timeout,
            )
        except (ClientError, TimeoutError) as e:
            logger.debug("Blob fetch failed for %s/%s: %r", did, cid, e)
            blob = None
        self._track("blob", "remote" if blob is not None else "none")
        return blob

    async def blob_url(self, did: str, cid: str) -> Optional[str]:
        """Public URL of a blob on the DID's repository host."""
        pds = await self._repo_host(did)
        if pds is None:
            return None
        return f"{xrpc_url(pds, GET_BLOB)}?{urlencode({'did': did, 'cid': cid})}"

    async def _collect(
        self, did: str, collection: str, local_only: bool
    ) -> List[ChatMessage]:
        messages: List[ChatMessage] = []
        cursor: Optional[str] = None
        seen = set()
        while True:
            page = await self._list_records(
                did, collection, MAX_LIST_LIMIT, cursor, local_only, ChatMessage
            )
            messages.extend(page.records)
            if page.cursor is None or page.cursor in seen:
                return messages
            seen.add(page.cursor)
            cursor = page.cursor

    async def get_chat_messages(
        self,
        user_did: str,
        bot_did: str,
        collection: str = DEFAULT_CHAT_COLLECTION,
        local_only: bool = False,
    ) -> List[ChatMessage]:
        """Load the chat log from the user's and the bot's repositories.

        Both repositories are read concurrently; the result is oldest first.
        """
        async with asyncio.TaskGroup() as tg:
            user_task = tg.create_task(self._collect(user_did, collection, local_only))
            bot_task = tg.create_task(self._collect(bot_did, collection, local_only))

        messages = {
            message.uri: message for message in user_task.result() + bot_task.result()
        }
        return sorted(
            messages.values(), key=lambda message: (message.created_at, message.uri)
        )

    async def invalidate(self, did: str, collection: Optional[str] = None) -> int:
        """Evict cached content for a repository, e.g. after writing to it."""
        if self.cache is None:
            return 0
        return await self.cache.invalidate_pattern(cache_key(did, collection))

    async def get_appview_profile(self, did: str) -> Optional[Dict[str, Any]]:
        """Hydrated profile view (display name, avatar URL, counts) from an AppView.

        The AppView of the network hosting the DID's repository is asked first,
        then the public Bluesky AppView.
        """
        key = cache_key("appview", did)
        cached = await self._cache_get(key)
        if isinstance(cached, dict):
            self._track("appview", "cache")
            return cached

        api_urls = []
        pds = await self._repo_host(did)
        if pds is not None:
            api_urls.append(self.resolver.endpoints_for(pds).profile_api_url)
        if DEFAULT_PROFILE_API_URL not in api_urls:
            api_urls.append(DEFAULT_PROFILE_API_URL)

        for api_url in api_urls:
            body = await self._fetch_json(xrpc_url(api_url, GET_PROFILE), {"actor": did})
            if isinstance(body, dict) and body.get("did") == did:
                await self._cache_set(key, body)
                self._track("appview", "remote")
                return body
            logger.debug("No AppView profile for %s on %s", did, api_url)

        self._track("appview", "none")
        return None

    async def search_posts_for_url(
        self, url: str, api_url: str = DEFAULT_PROFILE_API_URL
    ) -> List[Dict[str, Any]]:
        """Posts on an AppView that link to ``url``, newest first.

        The AppView is searched by the URL's host, and results that neither
        mention nor embed the URL are dropped.
        """
        key = cache_key("search", api_url, url)
        cached = await self._cache_get(key)
        if isinstance(cached, list):
            self._track("search", "cache")
            return cached

        query = urlparse(url).hostname or url
        body = await self._fetch_json(
            xrpc_url(api_url, SEARCH_POSTS),
            {"q": query, "limit": str(SEARCH_LIMIT)},
            timeout=min(self.timeout, SEARCH_TIMEOUT),
        )
        raw_posts = body.get("posts") if isinstance(body, dict) else None
        if not isinstance(raw_posts, list):
            self._track("search", "none")
            return []

        posts: Dict[str, Dict[str, Any]] = {}
        for post in raw_posts:
            if links_to(post, url) and isinstance(post.get("uri"), str):
                posts.setdefault(post["uri"], post)
        result = sorted(
            posts.values(),
            key=lambda post: parse_datetime(post["record"].get("createdAt")),
            reverse=True,
        )
        await self._cache_set(key, result)
        self._track("search", "remote")
        return result
