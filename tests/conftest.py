"""
Shared test configuration and fixtures.

HTTP is never touched: ``http_session`` is an ``AsyncMock(spec=ClientSession)``
whose ``get`` is routed by URL through a ``Router``. Unrouted URLs answer 404.
"""

from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import fakeredis.aioredis
import pytest
import pytest_asyncio
from aiohttp import ClientResponse, ClientSession

from social.atlas.model.network import NetworkRegistry


def make_response(
    status: int = 200,
    json_body: Any = None,
    body: bytes = b"",
    content_type: str = "application/json",
) -> AsyncMock:
    response = AsyncMock(spec=ClientResponse)
    response.status = status
    response.content_type = content_type
    response.json.return_value = json_body
    response.read.return_value = body
    return response


def as_context(response: AsyncMock) -> MagicMock:
    context = MagicMock()
    context.__aenter__.return_value = response
    context.__aexit__.return_value = False
    return context


class Router:
    """URL -> response table standing in for ``ClientSession.get``."""

    def __init__(self) -> None:
        self.routes: Dict[str, Any] = {}
        self.calls: List[Tuple[str, Optional[Dict[str, Any]]]] = []

    def json(
        self,
        url: str,
        body: Any,
        status: int = 200,
        content_type: str = "application/json",
    ) -> None:
        self.routes[url] = make_response(status, body, content_type=content_type)

    def bytes(self, url: str, body: bytes, status: int = 200) -> None:
        self.routes[url] = make_response(
            status, body=body, content_type="application/octet-stream"
        )

    def fail(self, url: str, exc: BaseException) -> None:
        self.routes[url] = exc

    def urls(self) -> List[str]:
        return [url for url, _ in self.calls]

    def __call__(self, url, params=None, headers=None, timeout=None, **kwargs):
        self.calls.append((url, params))
        route = self.routes.get(url)
        if route is None:
            return as_context(make_response(404, {"error": "NotFound"}))
        if isinstance(route, BaseException):
            raise route
        return as_context(route)


@pytest.fixture
def router() -> Router:
    return Router()


@pytest.fixture
def http_session(router: Router) -> AsyncMock:
    session = AsyncMock(spec=ClientSession)
    session.get.side_effect = router
    return session


@pytest.fixture
def registry() -> NetworkRegistry:
    """Two synthetic networks; alpha is tried first."""
    return NetworkRegistry.from_mapping(
        {
            "alpha.test": {
                "plc": "https://plc.alpha.test",
                "bsky": "https://api.alpha.test",
                "web": "https://web.alpha.test",
                "pds": "https://pds.alpha.test",
            },
            "beta.test": {
                "plc": "https://plc.beta.test",
                "bsky": "https://api.beta.test",
                "web": "https://web.beta.test",
                "pds": "https://pds.beta.test",
            },
        }
    )


def did_document(did: str, handle: str, pds: str) -> Dict[str, Any]:
    return {
        "id": did,
        "alsoKnownAs": [f"at://{handle}"],
        "service": [
            {
                "id": "#atproto_pds",
                "type": "AtprotoPersonalDataServer",
                "serviceEndpoint": pds,
            }
        ],
    }


@pytest.fixture
def make_did_document():
    return did_document


@pytest_asyncio.fixture
async def fake_redis_client():
    """Provide fake Redis client for unit tests."""
    client = fakeredis.aioredis.FakeRedis(decode_responses=False)
    yield client
    await client.flushall()
    await client.aclose()
