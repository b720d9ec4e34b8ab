"""Readers for the local materialised snapshot of repositories.

The snapshot is a static mirror written by ``atlasutil sync``:

    /<did>/describe.json
    /<did>/<collection>/index.json     ordered list of record keys
    /<did>/<collection>/<rkey>.json    {uri, cid, value}
    /<did>/blob/<cid>                  raw bytes

It can live on the local filesystem or behind a static HTTP server.
"""

from abc import ABC, abstractmethod
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from social.atlas.atproto.xrpc import FETCH_TIMEOUT, is_success

logger = logging.getLogger(__name__)


def safe_component(value: Optional[str]) -> bool:
    """Check that a DID, collection, record key or CID can be used as a path segment."""
    return (
        value is not None
        and len(value) > 0
        and value not in (".", "..")
        and "/" not in value
        and "\\" not in value
        and "\x00" not in value
    )


class Snapshot(ABC):
    @abstractmethod
    async def read_json(self, *parts: str) -> Optional[Any]:
        """Read ``/<parts...>`` as JSON, None when absent or unreadable."""
        pass

    @abstractmethod
    async def read_bytes(self, *parts: str) -> Optional[bytes]:
        pass

    async def read_record(self, did: str, collection: str, rkey: str) -> Optional[Any]:
        if not all(safe_component(part) for part in (did, collection, rkey)):
            return None
        return await self.read_json(did, collection, f"{rkey}.json")

    async def read_index(self, did: str, collection: str) -> Optional[List[str]]:
        if not all(safe_component(part) for part in (did, collection)):
            return None
        index = await self.read_json(did, collection, "index.json")
        if not isinstance(index, list):
            return None
        return [str(rkey) for rkey in index]

    async def read_describe(self, did: str) -> Optional[Any]:
        if not safe_component(did):
            return None
        return await self.read_json(did, "describe.json")

    async def read_blob(self, did: str, cid: str) -> Optional[bytes]:
        if not all(safe_component(part) for part in (did, cid)):
            return None
        return await self.read_bytes(did, "blob", cid)


class FileSnapshot(Snapshot):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _load_json(self, path: Path) -> Optional[Any]:
        if not path.is_file():
            return None
        try:
            with path.open() as fd:
                return json.load(fd)
        except (OSError, ValueError):
            logger.warning("Unreadable snapshot file %s", path, exc_info=True)
            return None

    def _load_bytes(self, path: Path) -> Optional[bytes]:
        if not path.is_file():
            return None
        try:
            return path.read_bytes()
        except OSError:
            logger.warning("Unreadable snapshot blob %s", path, exc_info=True)
            return None

    async def read_json(self, *parts: str) -> Optional[Any]:
        return await asyncio.to_thread(self._load_json, self.root.joinpath(*parts))

    async def read_bytes(self, *parts: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._load_bytes, self.root.joinpath(*parts))


class HttpSnapshot(Snapshot):
    """Snapshot served by a static web server (e.g. ``https://example.com/content``).

    Single-page-app hosts answer unknown paths with an HTML shell and a 200, so
    JSON reads also require a JSON content type.
    """

    def __init__(
        self, session: ClientSession, base_url: str, timeout: float = FETCH_TIMEOUT
    ) -> None:
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _url(self, parts: tuple) -> str:
        return "/".join((self.base_url,) + tuple(parts))

    async def read_json(self, *parts: str) -> Optional[Any]:
        url = self._url(parts)
        try:
            async with self.session.get(
                url, timeout=ClientTimeout(total=self.timeout)
            ) as resp:
                if not is_success(resp.status):
                    return None
                if "json" not in (resp.content_type or ""):
                    return None
                return await resp.json(content_type=None)
        except (ClientError, TimeoutError, ValueError) as e:
            logger.debug("Snapshot read failed for %s: %s", url, e)
            return None

    async def read_bytes(self, *parts: str) -> Optional[bytes]:
        url = self._url(parts)
        try:
            async with self.session.get(
                url, timeout=ClientTimeout(total=self.timeout)
            ) as resp:
                if not is_success(resp.status):
                    return None
                return await resp.read()
        except (ClientError, TimeoutError) as e:
            logger.debug("Snapshot read failed for %s: %s", url, e)
            return None


def create_snapshot(
    location: Optional[str], session: Optional[ClientSession] = None
) -> Optional[Snapshot]:
    """Build a snapshot reader from a filesystem path or an HTTP(S) base URL."""
    if location is None or len(location.strip()) == 0:
        return None
    location = location.strip()
    if location.startswith("http://") or location.startswith("https://"):
        if session is None:
            raise ValueError("an HTTP snapshot requires a client session")
        return HttpSnapshot(session, location)
    return FileSnapshot(location)
