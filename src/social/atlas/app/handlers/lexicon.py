import logging

from aiohttp import web

from social.atlas.app.config import SchemaResolverAppKey
from social.atlas.app.handlers.helpers import json_error

logger = logging.getLogger(__name__)


async def handle_validate(request: web.Request):
    """Validate a record against the lexicon published for its collection.

    Body: ``{"collection": <nsid>, "record": {...}}``. The response is the
    validation outcome; discovery failures are reported in the body with the
    failing stage rather than as an HTTP error.
    """
    try:
        body = await request.json()
    except ValueError:
        raise json_error(web.HTTPBadRequest, "invalid JSON body")

    if not isinstance(body, dict):
        raise json_error(web.HTTPBadRequest, "body must be an object")
    collection = body.get("collection")
    record = body.get("record")
    if not isinstance(collection, str) or len(collection) == 0:
        raise json_error(web.HTTPBadRequest, "missing field: collection")
    if not isinstance(record, dict):
        raise json_error(web.HTTPBadRequest, "missing field: record")

    outcome = await request.app[SchemaResolverAppKey].validate(collection, record)
    return web.json_response(outcome.model_dump(mode="json", exclude_none=True))
