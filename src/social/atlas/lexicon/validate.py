"""Structural validation of records against lexicon schema documents.

Covers the data types that can appear in records: null, boolean, integer,
string (with formats), bytes, cid-link, blob, array, object, ref, union and
unknown. References to definitions in other lexicons that were not supplied
are only checked for being objects.
"""

from datetime import datetime
import fnmatch
import re
import unicodedata
from typing import Any, Dict, Iterable, Mapping, Optional, Tuple

from social.atlas.errors import ValidationFailed
from social.atlas.model.record import parse_at_uri

BLOB_TYPE = "blob"
DEFAULT_BLOB_MIME_TYPE = "application/octet-stream"

_DATETIME_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})$"
)
_DID_RE = re.compile(r"^did:[a-z]+:[a-zA-Z0-9._:%-]*[a-zA-Z0-9._-]$")
_HANDLE_RE = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)
_NSID_RE = re.compile(
    r"^[a-zA-Z]([a-zA-Z0-9-]{0,62}[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]{0,62}[a-zA-Z0-9])?)+"
    r"\.[a-zA-Z][a-zA-Z0-9]{0,62}$"
)
_URI_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*:\S+$")
_CID_RE = re.compile(r"^[a-zA-Z0-9+=]{8,256}$")
_LANGUAGE_RE = re.compile(r"^(i|[a-z]{2,3})(-[a-zA-Z0-9]+)*$")
_TID_RE = re.compile(r"^[234567abcdefghij][234567abcdefghijklmnopqrstuvwxyz]{12}$")
_RECORD_KEY_RE = re.compile(r"^[a-zA-Z0-9_~.:-]{1,512}$")


def is_blob(value: Any) -> bool:
    """Check if a value is a wire-format blob reference."""
    return isinstance(value, dict) and value.get("$type") == BLOB_TYPE and "ref" in value


def has_blob(value: Any) -> bool:
    if is_blob(value):
        return True
    if isinstance(value, dict):
        return any(has_blob(v) for v in value.values())
    if isinstance(value, list):
        return any(has_blob(v) for v in value)
    return False


def normalize_blobs(value: Any) -> Any:
    """Rewrite blob references to ``{$type, ref, mimeType, size}``.

    Returns a new structure; the input is left untouched.
    """
    if is_blob(value):
        return {
            "$type": BLOB_TYPE,
            "ref": value["ref"],
            "mimeType": value.get("mimeType") or DEFAULT_BLOB_MIME_TYPE,
            "size": value.get("size") or 0,
        }
    if isinstance(value, dict):
        return {key: normalize_blobs(v) for key, v in value.items()}
    if isinstance(value, list):
        return [normalize_blobs(v) for v in value]
    return value


def grapheme_len(value: str) -> int:
    """Approximate the number of user-perceived characters.

    Combining marks, variation selectors and characters joined with a
    zero-width joiner do not start a new grapheme.
    """
    count = 0
    joined = False
    for char in value:
        if char == "\u200d":
            joined = True
            continue
        if joined:
            joined = False
            continue
        if unicodedata.combining(char) or "\ufe00" <= char <= "\ufe0f":
            continue
        if "\U0001f3fb" <= char <= "\U0001f3ff":
            continue
        count += 1
    return count


def _valid_datetime(value: str) -> bool:
    if _DATETIME_RE.match(value) is None:
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


def _valid_record_key(value: str) -> bool:
    return value not in (".", "..") and _RECORD_KEY_RE.match(value) is not None


def _valid_at_uri(value: str) -> bool:
    parsed = parse_at_uri(value)
    if parsed is None:
        return False
    return _DID_RE.match(parsed.repo) is not None or _HANDLE_RE.match(parsed.repo) is not None


FORMATS = {
    "datetime": _valid_datetime,
    "did": lambda v: _DID_RE.match(v) is not None,
    "handle": lambda v: _HANDLE_RE.match(v) is not None,
    "at-identifier": lambda v: _DID_RE.match(v) is not None
    or _HANDLE_RE.match(v) is not None,
    "nsid": lambda v: _NSID_RE.match(v) is not None,
    "at-uri": _valid_at_uri,
    "uri": lambda v: _URI_RE.match(v) is not None,
    "cid": lambda v: _CID_RE.match(v) is not None,
    "language": lambda v: _LANGUAGE_RE.match(v) is not None,
    "tid": lambda v: _TID_RE.match(v) is not None,
    "record-key": _valid_record_key,
}


def _is_integer(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


class LexiconValidator:
    """Validates records against one lexicon document.

    Additional documents may be supplied to resolve references into other
    lexicons.
    """

    def __init__(
        self,
        document: Mapping[str, Any],
        documents: Optional[Iterable[Mapping[str, Any]]] = None,
    ) -> None:
        if not isinstance(document.get("id"), str):
            raise ValueError("lexicon document has no id")
        self.id: str = document["id"]
        self.documents: Dict[str, Mapping[str, Any]] = {self.id: document}
        for extra in documents or []:
            if isinstance(extra.get("id"), str):
                self.documents.setdefault(extra["id"], extra)

    def _split_ref(self, ref: str, context: str) -> Tuple[str, str]:
        if ref.startswith("#"):
            return context, ref[1:]
        if "#" in ref:
            nsid, name = ref.split("#", 1)
            return nsid, name
        return ref, "main"

    def _full_ref(self, ref: str, context: str) -> str:
        nsid, name = self._split_ref(ref, context)
        if name == "main":
            return nsid
        return f"{nsid}#{name}"

    def _lookup(self, ref: str, context: str) -> Tuple[Optional[Mapping[str, Any]], str]:
        nsid, name = self._split_ref(ref, context)
        document = self.documents.get(nsid)
        if document is None:
            return None, nsid
        definition = (document.get("defs") or {}).get(name)
        return definition, nsid

    def _fail(
        self, path: str, reason: str, value: Any = None, blob: bool = False
    ) -> ValidationFailed:
        return ValidationFailed(path, reason, blob=blob or is_blob(value))

    def validate_record(self, nsid: str, record: Any) -> None:
        """Validate ``record`` against the ``main`` record definition of ``nsid``.

        Raises:
            ValidationFailed: on the first mismatch found
        """
        definition, _ = self._lookup(nsid, self.id)
        if definition is None:
            raise ValidationFailed("$", f"Lexicon not found: {nsid}")
        if definition.get("type") != "record":
            raise ValidationFailed("$", f"Lexicon {nsid} is not a record type")
        if not isinstance(record, dict):
            raise ValidationFailed("$", "Record must be an object")
        record_type = record.get("$type")
        if not isinstance(record_type, str):
            raise ValidationFailed("$.$type", "Record/$type must be a string")
        if self._full_ref(record_type, nsid) != nsid:
            raise ValidationFailed(
                "$.$type", f"Invalid $type: must be {nsid}, got {record_type}"
            )
        self._validate(definition.get("record") or {}, record, "$", nsid)

    def _validate(
        self, definition: Mapping[str, Any], value: Any, path: str, context: str
    ) -> None:
        kind = definition.get("type")

        if kind == "null":
            if value is not None:
                raise self._fail(path, f"{path} must be null", value)
        elif kind == "boolean":
            if not isinstance(value, bool):
                raise self._fail(path, f"{path} must be a boolean", value)
            self._check_const(definition, value, path)
        elif kind == "integer":
            self._validate_integer(definition, value, path)
        elif kind == "string":
            self._validate_string(definition, value, path)
        elif kind == "bytes":
            if not isinstance(value, dict) or not isinstance(value.get("$bytes"), str):
                raise self._fail(path, f"{path} must be a byte array", value)
        elif kind == "cid-link":
            if not isinstance(value, dict) or not isinstance(value.get("$link"), str):
                raise self._fail(path, f"{path} must be a CID", value)
        elif kind == "blob":
            self._validate_blob(definition, value, path)
        elif kind == "array":
            self._validate_array(definition, value, path, context)
        elif kind in ("object", "params"):
            self._validate_object(definition, value, path, context)
        elif kind == "ref":
            self._validate_ref(definition.get("ref", ""), value, path, context)
        elif kind == "union":
            self._validate_union(definition, value, path, context)
        elif kind == "unknown":
            if not isinstance(value, dict):
                raise self._fail(path, f"{path} must be an object", value)
        elif kind == "token":
            raise self._fail(path, f"{path} cannot be a token value", value)
        else:
            raise self._fail(path, f"{path} has unsupported type {kind!r}", value)

    def _check_const(self, definition: Mapping[str, Any], value: Any, path: str) -> None:
        if "const" in definition and value != definition["const"]:
            raise self._fail(path, f"{path} must be {definition['const']!r}")
        if "enum" in definition and value not in definition["enum"]:
            options = ", ".join(repr(option) for option in definition["enum"])
            raise self._fail(path, f"{path} must be one of ({options})")

    def _validate_integer(self, definition: Mapping[str, Any], value: Any, path: str) -> None:
        if not _is_integer(value):
            raise self._fail(path, f"{path} must be an integer", value)
        self._check_const(definition, value, path)
        minimum = definition.get("minimum")
        maximum = definition.get("maximum")
        if minimum is not None and value < minimum:
            raise self._fail(path, f"{path} can not be less than {minimum}")
        if maximum is not None and value > maximum:
            raise self._fail(path, f"{path} can not be greater than {maximum}")

    def _validate_string(self, definition: Mapping[str, Any], value: Any, path: str) -> None:
        if not isinstance(value, str):
            raise self._fail(path, f"{path} must be a string", value)
        self._check_const(definition, value, path)

        length = len(value.encode("utf-8"))
        if "minLength" in definition and length < definition["minLength"]:
            raise self._fail(
                path, f"{path} must not be shorter than {definition['minLength']} characters"
            )
        if "maxLength" in definition and length > definition["maxLength"]:
            raise self._fail(
                path, f"{path} must not be longer than {definition['maxLength']} characters"
            )
        if "minGraphemes" in definition or "maxGraphemes" in definition:
            graphemes = grapheme_len(value)
            if "minGraphemes" in definition and graphemes < definition["minGraphemes"]:
                raise self._fail(
                    path,
                    f"{path} must not be shorter than {definition['minGraphemes']} graphemes",
                )
            if "maxGraphemes" in definition and graphemes > definition["maxGraphemes"]:
                raise self._fail(
                    path,
                    f"{path} must not be longer than {definition['maxGraphemes']} graphemes",
                )

        string_format = definition.get("format")
        if string_format is not None:
            check = FORMATS.get(string_format)
            if check is not None and not check(value):
                raise self._fail(path, f"{path} must be a valid {string_format}")

    def _validate_blob(self, definition: Mapping[str, Any], value: Any, path: str) -> None:
        if not isinstance(value, dict):
            raise self._fail(path, f"{path} should be a blob ref", value, blob=True)

        if value.get("$type") == BLOB_TYPE:
            ref = value.get("ref")
            if not (isinstance(ref, dict) and isinstance(ref.get("$link"), str)) and not (
                isinstance(ref, str)
            ):
                raise self._fail(path, f"{path}/ref should be a CID link", blob=True)
            if not isinstance(value.get("mimeType"), str):
                raise self._fail(path, f"{path}/mimeType should be a string", blob=True)
            if not _is_integer(value.get("size")):
                raise self._fail(path, f"{path}/size should be an integer", blob=True)
        elif isinstance(value.get("cid"), str) and isinstance(value.get("mimeType"), str):
            pass
        else:
            raise self._fail(path, f"{path} should be a blob ref", blob=True)

        accept = definition.get("accept")
        if accept:
            mime_type = value["mimeType"]
            if not any(fnmatch.fnmatchcase(mime_type, pattern) for pattern in accept):
                raise self._fail(
                    path,
                    f"{path} mime type {mime_type} is not accepted ({', '.join(accept)})",
                    blob=True,
                )
        max_size = definition.get("maxSize")
        size = value.get("size")
        if max_size is not None and _is_integer(size) and size > max_size:
            raise self._fail(
                path, f"{path} is too big ({size} > {max_size} bytes)", blob=True
            )

    def _validate_array(
        self, definition: Mapping[str, Any], value: Any, path: str, context: str
    ) -> None:
        if not isinstance(value, list):
            raise self._fail(path, f"{path} must be an array", value)
        if "minLength" in definition and len(value) < definition["minLength"]:
            raise self._fail(
                path, f"{path} must not have fewer than {definition['minLength']} elements"
            )
        if "maxLength" in definition and len(value) > definition["maxLength"]:
            raise self._fail(
                path, f"{path} must not have more than {definition['maxLength']} elements"
            )
        items = definition.get("items") or {"type": "unknown"}
        for i, item in enumerate(value):
            self._validate(items, item, f"{path}[{i}]", context)

    def _validate_object(
        self, definition: Mapping[str, Any], value: Any, path: str, context: str
    ) -> None:
        if not isinstance(value, dict):
            raise self._fail(path, f"{path} must be an object", value)

        nullable = set(definition.get("nullable") or [])
        for key in definition.get("required") or []:
            if key not in value or (value[key] is None and key not in nullable):
                raise self._fail(
                    f"{path}.{key}", f"{path} must have the property \"{key}\""
                )

        for key, property_definition in (definition.get("properties") or {}).items():
            if key not in value:
                continue
            if value[key] is None and key in nullable:
                continue
            self._validate(property_definition, value[key], f"{path}.{key}", context)

    def _validate_ref(self, ref: str, value: Any, path: str, context: str) -> None:
        definition, nsid = self._lookup(ref, context)
        if definition is None:
            # Definitions from lexicons that were not supplied.
            if not isinstance(value, dict):
                raise self._fail(path, f"{path} must be an object", value)
            return
        if definition.get("type") == "record":
            definition = definition.get("record") or {}
        if definition.get("type") == "token":
            if value != self._full_ref(ref, context):
                raise self._fail(path, f"{path} must be {self._full_ref(ref, context)}")
            return
        self._validate(definition, value, path, nsid)

    def _validate_union(
        self, definition: Mapping[str, Any], value: Any, path: str, context: str
    ) -> None:
        value_type = value.get("$type") if isinstance(value, dict) else None
        if not isinstance(value_type, str):
            raise self._fail(
                path, f"{path} must be an object which includes the \"$type\" property", value
            )

        refs = definition.get("refs") or []
        by_type = {self._full_ref(ref, context): ref for ref in refs}
        target = self._full_ref(value_type, value_type.split("#", 1)[0])
        if target not in by_type:
            if definition.get("closed"):
                raise self._fail(
                    path, f"{path} $type must be one of {', '.join(sorted(by_type))}", value
                )
            return
        self._validate_ref(by_type[target], value, path, context)
