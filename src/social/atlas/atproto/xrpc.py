from typing import Any, Dict, Optional

from aiohttp import ClientSession, ClientTimeout

RESOLVE_HANDLE = "com.atproto.identity.resolveHandle"
DESCRIBE_REPO = "com.atproto.repo.describeRepo"
GET_RECORD = "com.atproto.repo.getRecord"
LIST_RECORDS = "com.atproto.repo.listRecords"
GET_BLOB = "com.atproto.sync.getBlob"
GET_PROFILE = "app.bsky.actor.getProfile"
SEARCH_POSTS = "app.bsky.feed.searchPosts"

IDENTITY_TIMEOUT = 5.0
FETCH_TIMEOUT = 10.0
SEARCH_TIMEOUT = 5.0


def xrpc_url(host: str, method: str) -> str:
    """Build an XRPC URL, accepting either a bare hostname or a base URL."""
    host = host.rstrip("/")
    if not host.startswith("http://") and not host.startswith("https://"):
        host = f"https://{host}"
    return f"{host}/xrpc/{method}"


def is_success(status: int) -> bool:
    return 200 <= status < 300


async def get_json(
    session: ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = FETCH_TIMEOUT,
    headers: Optional[Dict[str, str]] = None,
) -> Optional[Any]:
    """GET a JSON document, returning None for non-2xx responses.

    Transport errors, timeouts and undecodable bodies propagate; each caller
    decides whether they end its fallback tier.
    """
    async with session.get(
        url, params=params, headers=headers, timeout=ClientTimeout(total=timeout)
    ) as resp:
        if not is_success(resp.status):
            return None
        return await resp.json(content_type=None)


async def get_bytes(
    session: ClientSession,
    url: str,
    params: Optional[Dict[str, Any]] = None,
    timeout: float = FETCH_TIMEOUT,
) -> Optional[bytes]:
    async with session.get(
        url, params=params, timeout=ClientTimeout(total=timeout)
    ) as resp:
        if not is_success(resp.status):
            return None
        return await resp.read()
