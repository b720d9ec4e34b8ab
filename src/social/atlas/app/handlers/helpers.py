import json
from typing import Any, Dict, Optional

from aiohttp import web

TRUTHY = frozenset({"1", "true", "yes", "on"})


def json_error(exc_class, message: str, **extra: Any) -> web.HTTPException:
    """Build an HTTP exception with a JSON ``{"error": ...}`` body."""
    body: Dict[str, Any] = {"error": message, **extra}
    return exc_class(body=json.dumps(body), content_type="application/json")


def query_param(request: web.Request, name: str) -> str:
    """Required, non-empty query parameter.

    Raises:
        web.HTTPBadRequest: if the parameter is missing or blank
    """
    value = request.query.get(name, "").strip()
    if len(value) == 0:
        raise json_error(web.HTTPBadRequest, f"missing parameter: {name}")
    return value


def optional_param(request: web.Request, name: str) -> Optional[str]:
    value = request.query.get(name, "").strip()
    return value if len(value) > 0 else None


def query_flag(request: web.Request, name: str) -> bool:
    return request.query.get(name, "").strip().lower() in TRUTHY


def query_int(
    request: web.Request, name: str, default: int, minimum: int = 1, maximum: int = 100
) -> int:
    """Integer query parameter clamped to ``[minimum, maximum]``.

    Raises:
        web.HTTPBadRequest: if the value is not an integer
    """
    raw = request.query.get(name)
    if raw is None or len(raw.strip()) == 0:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise json_error(web.HTTPBadRequest, f"invalid parameter: {name}")
    return min(max(value, minimum), maximum)
