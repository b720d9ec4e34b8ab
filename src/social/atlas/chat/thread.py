"""Recover conversation threads from a flat chat log.

Chat messages from the user's and the bot's repositories only record which
message started their conversation (``root``). Threads are recomputed from the
loaded messages on every call; nothing is stored or mutated.

Grouping rules:
- a message without ``root`` anchors its own thread
- a message whose ``root`` is loaded joins that message's thread, following
  root references transitively
- a message whose ``root`` is not loaded is orphaned; all messages sharing the
  same missing root form one thread
- reference cycles collapse onto the smallest URI in the cycle

Each thread containing at least one message by the user is represented in the
index by exactly one root: its anchor when the user wrote it, otherwise the
user's earliest message in the thread.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from social.atlas.model.record import DEFAULT_CHAT_COLLECTION, ChatMessage

DEFAULT_LANG = "ja"


class ThreadRoot(BaseModel):
    """Descriptor of one conversation in the thread index."""

    uri: str
    rkey: str
    message: ChatMessage
    orphaned: bool = False
    original_root: Optional[str] = None


def _order(message: ChatMessage) -> Tuple[datetime, str]:
    return message.created_at, message.uri


def _group_keys(messages: Sequence[ChatMessage]) -> Dict[str, str]:
    """Map every message URI to the key of the thread it belongs to.

    Keys are ``uri:<anchor>`` for threads anchored on a loaded message and
    ``orphan:<missing root>`` for orphaned threads.
    """
    by_uri: Dict[str, ChatMessage] = {}
    for message in messages:
        by_uri.setdefault(message.uri, message)

    keys: Dict[str, str] = {}
    for uri in by_uri:
        if uri in keys:
            continue
        path: List[str] = []
        on_path: Dict[str, int] = {}
        current: Optional[str] = uri
        key: Optional[str] = None
        while key is None:
            if current in keys:
                key = keys[current]
            elif current in on_path:
                cycle = path[on_path[current] :]
                key = f"uri:{min(cycle)}"
            else:
                on_path[current] = len(path)
                path.append(current)
                root = by_uri[current].root
                if root is None or root == current:
                    key = f"uri:{current}"
                elif root not in by_uri:
                    key = f"orphan:{root}"
                else:
                    current = root
        for visited in path:
            keys[visited] = key
    return keys


def build_thread_index(
    messages: Iterable[ChatMessage], user_did: str
) -> List[ThreadRoot]:
    """Thread roots for the user's conversations, newest first."""
    messages = list(messages)
    keys = _group_keys(messages)

    representatives: Dict[str, ChatMessage] = {}
    for message in messages:
        if message.author != user_did:
            continue
        key = keys[message.uri]
        current = representatives.get(key)
        if key == f"uri:{message.uri}":
            representatives[key] = message
        elif current is None or (
            current.uri != key.removeprefix("uri:") and _order(message) < _order(current)
        ):
            representatives[key] = message

    roots = [
        ThreadRoot(
            uri=message.uri,
            rkey=message.rkey,
            message=message,
            orphaned=key.startswith("orphan:"),
            original_root=key.removeprefix("orphan:") if key.startswith("orphan:") else None,
        )
        for key, message in representatives.items()
    ]
    return sorted(roots, key=lambda root: _order(root.message), reverse=True)


def build_thread(root_uri: str, messages: Iterable[ChatMessage]) -> List[ChatMessage]:
    """All messages of the thread containing ``root_uri``, oldest first.

    When ``root_uri`` is not among the loaded messages, the messages that
    reference it as their root are returned.
    """
    messages = list(messages)
    keys = _group_keys(messages)
    key = keys.get(root_uri, f"orphan:{root_uri}")

    seen = set()
    thread: List[ChatMessage] = []
    for message in messages:
        if message.uri in seen:
            continue
        if keys[message.uri] == key:
            seen.add(message.uri)
            thread.append(message)
    return sorted(thread, key=_order)


def effective_content(
    message: ChatMessage, lang: Optional[str], default_lang: str = DEFAULT_LANG
) -> str:
    """Message content in ``lang`` when a translation exists, else the original."""
    original_lang = message.lang or default_lang
    if lang is None or lang == original_lang:
        return message.content
    translation = message.translations.get(lang)
    if isinstance(translation, dict) and translation.get("content"):
        return translation["content"]
    return message.content


def thread_root_uri(
    user_did: str, rkey: str, collection: str = DEFAULT_CHAT_COLLECTION
) -> str:
    return f"at://{user_did}/{collection}/{rkey}"
