"""AT Protocol record data models.

Records are returned to callers exactly as the repository (or the local
snapshot) served them; ``value`` is an opaque document and is never rewritten.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

PROFILE_COLLECTION = "app.bsky.actor.profile"
PROFILE_RKEY = "self"
LEXICON_SCHEMA_COLLECTION = "com.atproto.lexicon.schema"
DEFAULT_CHAT_COLLECTION = "ai.syui.log.chat"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class AtUri(NamedTuple):
    repo: str
    collection: Optional[str]
    rkey: Optional[str]


def parse_at_uri(uri: str) -> Optional[AtUri]:
    """Split ``at://<repo>/<collection>/<rkey>`` into its parts."""
    if uri is None or not uri.startswith("at://"):
        return None
    parts = uri.removeprefix("at://").split("/")
    if len(parts) == 0 or len(parts[0]) == 0:
        return None
    collection = parts[1] if len(parts) > 1 and parts[1] else None
    rkey = parts[2] if len(parts) > 2 and parts[2] else None
    return AtUri(parts[0], collection, rkey)


def parse_datetime(value: Any) -> datetime:
    """Parse an RFC 3339 timestamp, mapping anything unparseable to the epoch.

    Naive timestamps are taken as UTC so that every result is comparable.
    """
    if not isinstance(value, str) or len(value) == 0:
        return _EPOCH
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _ref_uri(value: Any) -> Optional[str]:
    """Read a record reference given as a URI string or a ``{uri, cid}`` strong ref."""
    if isinstance(value, dict):
        value = value.get("uri")
    if isinstance(value, str) and len(value) > 0:
        return value
    return None


class Identity(BaseModel):
    """A resolved identity: DID, current handle and repository host."""

    did: str
    handle: str
    repo_host: str


class Record(BaseModel):
    """A content-addressed record snapshot."""

    model_config = ConfigDict(extra="allow")

    uri: str
    cid: Optional[str] = None
    value: Dict[str, Any] = Field(default_factory=dict)

    @property
    def rkey(self) -> str:
        return self.uri.rsplit("/", 1)[-1]

    @property
    def created_at(self) -> datetime:
        return parse_datetime(self.value.get("createdAt"))


class ChatMessage(Record):
    """A chat log record authored by a user or by the bot."""

    @property
    def author(self) -> Optional[str]:
        return self.value.get("author")

    @property
    def content(self) -> str:
        return self.value.get("content") or ""

    @property
    def root(self) -> Optional[str]:
        return _ref_uri(self.value.get("root"))

    @property
    def parent(self) -> Optional[str]:
        return _ref_uri(self.value.get("parent"))

    @property
    def lang(self) -> Optional[str]:
        return self.value.get("lang") or None

    @property
    def translations(self) -> Dict[str, Dict[str, Any]]:
        translations = self.value.get("translations")
        if not isinstance(translations, dict):
            return {}
        return translations


class RecordPage(BaseModel):
    """One page of ``listRecords`` output."""

    records: List[Record] = Field(default_factory=list)
    cursor: Optional[str] = None


class RepoDescription(BaseModel):
    """``describeRepo`` output, or the ``describe.json`` snapshot file."""

    model_config = ConfigDict(populate_by_name=True)

    did: str
    handle: Optional[str] = None
    collections: List[str] = Field(default_factory=list)
    did_doc: Optional[Dict[str, Any]] = Field(alias="didDoc", default=None)
