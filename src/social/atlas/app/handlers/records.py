import logging
from typing import Any, Dict, List

from aiohttp import web

from social.atlas.app.config import (
    LoaderAppKey,
    RegistryAppKey,
    ResolverAppKey,
    SettingsAppKey,
)
from social.atlas.app.handlers.helpers import (
    json_error,
    optional_param,
    query_flag,
    query_int,
    query_param,
)
from social.atlas.atproto.content import MAX_LIST_LIMIT
from social.atlas.chat.thread import (
    build_thread,
    build_thread_index,
    effective_content,
    thread_root_uri,
)
from social.atlas.model.network import DEFAULT_PROFILE_API_URL
from social.atlas.model.record import ChatMessage

logger = logging.getLogger(__name__)


async def _subject_did(request: web.Request) -> str:
    subject = query_param(request, "subject")
    return await request.app[ResolverAppKey].resolve_handle_to_did(subject)


async def handle_profile(request: web.Request):
    did = await _subject_did(request)
    profile = await request.app[LoaderAppKey].get_profile(
        did, local_only=query_flag(request, "local")
    )
    if profile is None:
        raise json_error(web.HTTPNotFound, "profile not found", did=did)
    return web.json_response(profile.model_dump(exclude_none=True))


async def handle_record(request: web.Request):
    collection = query_param(request, "collection")
    rkey = query_param(request, "rkey")
    did = await _subject_did(request)

    record = await request.app[LoaderAppKey].get_record(
        did, collection, rkey, local_only=query_flag(request, "local")
    )
    if record is None:
        raise json_error(web.HTTPNotFound, "record not found", did=did)
    return web.json_response(record.model_dump(exclude_none=True))


async def handle_records(request: web.Request):
    collection = query_param(request, "collection")
    limit = query_int(request, "limit", default=50, maximum=MAX_LIST_LIMIT)
    cursor = optional_param(request, "cursor")
    did = await _subject_did(request)

    page = await request.app[LoaderAppKey].list_records(
        did, collection, limit=limit, cursor=cursor, local_only=query_flag(request, "local")
    )
    return web.json_response(page.model_dump(exclude_none=True))


async def handle_describe(request: web.Request):
    did = await _subject_did(request)
    description = await request.app[LoaderAppKey].describe_repo(
        did, local_only=query_flag(request, "local")
    )
    if description is None:
        raise json_error(web.HTTPNotFound, "repository not found", did=did)
    return web.json_response(description.model_dump(by_alias=True))


async def handle_blob(request: web.Request):
    cid = query_param(request, "cid")
    did = await _subject_did(request)
    blob = await request.app[LoaderAppKey].get_blob(
        did, cid, local_only=query_flag(request, "local")
    )
    if blob is None:
        raise json_error(web.HTTPNotFound, "blob not found", did=did, cid=cid)
    return web.Response(body=blob, content_type="application/octet-stream")


async def handle_appview_profile(request: web.Request):
    did = await _subject_did(request)
    profile = await request.app[LoaderAppKey].get_appview_profile(did)
    if profile is None:
        raise json_error(web.HTTPNotFound, "profile not found", did=did)
    return web.json_response(profile)


async def handle_search(request: web.Request):
    """Posts linking to ``url``, searched on the AppView of ``network`` if given."""
    url = query_param(request, "url")
    api_url = DEFAULT_PROFILE_API_URL
    network_key = optional_param(request, "network")
    if network_key is not None:
        network = request.app[RegistryAppKey].get(network_key)
        if network is None:
            raise json_error(web.HTTPBadRequest, "unknown network", network=network_key)
        api_url = network.profile_api_url

    posts = await request.app[LoaderAppKey].search_posts_for_url(url, api_url=api_url)
    return web.json_response({"posts": posts})


def _message_json(message: ChatMessage, lang: str | None, default_lang: str) -> Dict[str, Any]:
    return {
        "uri": message.uri,
        "cid": message.cid,
        "rkey": message.rkey,
        "author": message.author,
        "createdAt": message.value.get("createdAt"),
        "root": message.root,
        "parent": message.parent,
        "lang": message.lang or default_lang,
        "content": effective_content(message, lang, default_lang),
    }


async def _chat_messages(request: web.Request) -> tuple[str, List[ChatMessage]]:
    settings = request.app[SettingsAppKey]
    if settings.bot_did is None:
        raise json_error(web.HTTPNotFound, "chat is not configured")

    subject = optional_param(request, "subject")
    if subject is not None:
        user_did = await request.app[ResolverAppKey].resolve_handle_to_did(subject)
    elif settings.user_did is not None:
        user_did = settings.user_did
    else:
        raise json_error(web.HTTPBadRequest, "missing parameter: subject")

    messages = await request.app[LoaderAppKey].get_chat_messages(
        user_did, settings.bot_did, settings.chat_collection
    )
    return user_did, messages


async def handle_chat_index(request: web.Request):
    settings = request.app[SettingsAppKey]
    lang = optional_param(request, "lang")
    user_did, messages = await _chat_messages(request)

    roots = build_thread_index(messages, user_did)
    return web.json_response(
        [
            {
                **_message_json(root.message, lang, settings.default_lang),
                "orphaned": root.orphaned,
                "originalRoot": root.original_root,
            }
            for root in roots
        ]
    )


async def handle_chat_thread(request: web.Request):
    settings = request.app[SettingsAppKey]
    rkey = request.match_info["rkey"]
    lang = optional_param(request, "lang")
    user_did, messages = await _chat_messages(request)

    root_uri = thread_root_uri(user_did, rkey, settings.chat_collection)
    thread = build_thread(root_uri, messages)
    if len(thread) == 0:
        raise json_error(web.HTTPNotFound, "thread not found", uri=root_uri)
    return web.json_response(
        [_message_json(message, lang, settings.default_lang) for message in thread]
    )
