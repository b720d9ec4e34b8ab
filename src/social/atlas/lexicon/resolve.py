"""Lexicon schema discovery and record validation.

A schema is discovered from its NSID in stages: the authority's
``_lexicon.<authority>`` TXT record names the DID that publishes it, the DID
document names the repository host, and the schema itself is the
``com.atproto.lexicon.schema`` record keyed by the NSID.

Every stage reports failure as a ``ValidationOutcome`` in the ``failed``
state naming the stage; ``SchemaResolver.validate`` never raises for
discovery or validation failures.
"""

from enum import StrEnum
import logging
from typing import Any, Dict, List, Literal, Optional, Tuple

from aiodns import DNSResolver
from aiodns.error import DNSError
from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, ConfigDict, ValidationError
import sentry_sdk

from social.atlas.app.metrics import MetricsClient, NoOpMetricsClient
from social.atlas.atproto.xrpc import FETCH_TIMEOUT, GET_RECORD, get_json, xrpc_url
from social.atlas.errors import ResolutionFailed, SchemaDiscoveryFailed, ValidationFailed
from social.atlas.lexicon.validate import LexiconValidator, has_blob, normalize_blobs
from social.atlas.model.record import LEXICON_SCHEMA_COLLECTION
from social.atlas.resolve.handle import IdentityResolver, pds_endpoint

logger = logging.getLogger(__name__)

DEFAULT_DOH_URL = "https://mozilla.cloudflare-dns.com/dns-query"
DNS_TXT_TYPE = 16
DID_PREFIX = "did="


class Stage(StrEnum):
    ParseId = "ParseId"
    DnsLookup = "DnsLookup"
    ResolveDid = "ResolveDid"
    ResolvePds = "ResolvePds"
    FetchSchema = "FetchSchema"
    Validate = "Validate"


class SchemaDocument(BaseModel):
    """A lexicon document as published in a repository."""

    model_config = ConfigDict(extra="allow")

    lexicon: int
    id: str
    defs: Dict[str, Any]


class ValidationOutcome(BaseModel):
    state: Literal["valid", "invalid", "failed"]
    lexicon_id: str
    stage: Optional[Stage] = None
    path: Optional[str] = None
    reason: Optional[str] = None

    @staticmethod
    def valid(lexicon_id: str) -> "ValidationOutcome":
        return ValidationOutcome(state="valid", lexicon_id=lexicon_id)

    @staticmethod
    def invalid(lexicon_id: str, path: str, reason: str) -> "ValidationOutcome":
        return ValidationOutcome(
            state="invalid", lexicon_id=lexicon_id, path=path, reason=reason
        )

    @staticmethod
    def failed(lexicon_id: str, stage: Stage, reason: str) -> "ValidationOutcome":
        return ValidationOutcome(
            state="failed",
            lexicon_id=lexicon_id,
            stage=stage,
            reason=reason,
        )


def parse_nsid(nsid: str) -> Tuple[str, str]:
    """Split an NSID into its authority and name.

    The authority is the reversed domain formed by every segment but the
    last: ``com.example.widget`` has authority ``example.com``.

    Raises:
        SchemaDiscoveryFailed: fewer than three segments or an empty segment
    """
    segments = nsid.split(".") if isinstance(nsid, str) else []
    if len(segments) < 3 or any(len(segment) == 0 for segment in segments):
        raise SchemaDiscoveryFailed(Stage.ParseId, f"Invalid NSID: {nsid!r}")
    authority = ".".join(reversed(segments[:-1])).lower()
    return authority, segments[-1]


def _txt_value(value: str) -> str:
    return value.strip().strip('"')


class SchemaResolver:
    """Discovers lexicon schemas over DNS and validates records against them."""

    def __init__(
        self,
        session: ClientSession,
        resolver: IdentityResolver,
        dns_backend: str = "doh",
        doh_url: str = DEFAULT_DOH_URL,
        timeout: float = FETCH_TIMEOUT,
        metrics_client: Optional[MetricsClient] = None,
    ) -> None:
        if dns_backend not in ("doh", "system"):
            raise ValueError(f"Unsupported DNS backend: {dns_backend}")
        self.session = session
        self.resolver = resolver
        self.dns_backend = dns_backend
        self.doh_url = doh_url
        self.timeout = timeout
        self.metrics_client = metrics_client or NoOpMetricsClient()

    async def _txt_doh(self, name: str) -> List[str]:
        async with self.session.get(
            self.doh_url,
            params={"name": name, "type": "TXT"},
            headers={"accept": "application/dns-json"},
            timeout=ClientTimeout(total=self.timeout),
        ) as resp:
            if resp.status < 200 or resp.status >= 300:
                return []
            body = await resp.json(content_type=None)
        if not isinstance(body, dict):
            return []
        return [
            _txt_value(answer["data"])
            for answer in body.get("Answer") or []
            if isinstance(answer, dict)
            and answer.get("type") == DNS_TXT_TYPE
            and isinstance(answer.get("data"), str)
        ]

    async def _txt_system(self, name: str) -> List[str]:
        resolver = DNSResolver()
        results = await resolver.query(name, "TXT")
        values = []
        for result in results or []:
            text = result.text
            if isinstance(text, bytes):
                text = text.decode("utf-8", errors="replace")
            values.append(_txt_value(text))
        return values

    async def lookup_authority_did(self, authority: str) -> str:
        """DID published in the ``_lexicon`` TXT record of an authority.

        Raises:
            SchemaDiscoveryFailed: no usable record
        """
        name = f"_lexicon.{authority}"
        try:
            if self.dns_backend == "system":
                values = await self._txt_system(name)
            else:
                values = await self._txt_doh(name)
        except (ClientError, TimeoutError, ValueError, DNSError) as e:
            logger.debug("TXT lookup for %s failed: %r", name, e)
            raise SchemaDiscoveryFailed(Stage.DnsLookup, "no record")

        for value in values:
            if value.startswith(DID_PREFIX):
                return value.removeprefix(DID_PREFIX)
        raise SchemaDiscoveryFailed(Stage.DnsLookup, "no record")

    async def _fetch_schema(self, pds: str, did: str, nsid: str) -> SchemaDocument:
        try:
            body = await get_json(
                self.session,
                xrpc_url(pds, GET_RECORD),
                params={
                    "repo": did,
                    "collection": LEXICON_SCHEMA_COLLECTION,
                    "rkey": nsid,
                },
                timeout=self.timeout,
            )
        except (ClientError, TimeoutError, ValueError) as e:
            raise SchemaDiscoveryFailed(Stage.FetchSchema, f"request failed: {e!r}")

        value = body.get("value") if isinstance(body, dict) else None
        if not isinstance(value, dict):
            raise SchemaDiscoveryFailed(Stage.FetchSchema, "schema record not found")
        try:
            return SchemaDocument.model_validate(value)
        except ValidationError as e:
            raise SchemaDiscoveryFailed(
                Stage.FetchSchema, f"malformed schema document: {e.error_count()} errors"
            )

    async def resolve_schema(self, nsid: str) -> SchemaDocument:
        """Discover and fetch the lexicon document for ``nsid``.

        Raises:
            SchemaDiscoveryFailed: naming the stage that failed
        """
        authority, _ = parse_nsid(nsid)
        did = await self.lookup_authority_did(authority)
        logger.debug("Lexicon authority %s is published by %s", authority, did)

        try:
            document = await self.resolver.resolve_did_document(did)
        except ResolutionFailed as e:
            raise SchemaDiscoveryFailed(Stage.ResolveDid, str(e))

        pds = pds_endpoint(document)
        if pds is None:
            raise SchemaDiscoveryFailed(Stage.ResolvePds, f"no repository host for {did}")

        schema = await self._fetch_schema(pds, did, nsid)
        if schema.id != nsid:
            raise SchemaDiscoveryFailed(
                Stage.FetchSchema, f"schema id {schema.id} does not match {nsid}"
            )
        return schema

    def validate_document(
        self, nsid: str, schema: SchemaDocument, record: Dict[str, Any]
    ) -> ValidationOutcome:
        """Validate a record against an already fetched schema."""
        try:
            validator = LexiconValidator(schema.model_dump())
            validator.validate_record(nsid, normalize_blobs(record))
        except ValidationFailed as e:
            if e.blob and has_blob(record):
                logger.info("Accepting %s record despite blob mismatch: %s", nsid, e.reason)
                return ValidationOutcome.valid(nsid)
            return ValidationOutcome.invalid(nsid, e.path, e.reason)
        except ValueError as e:
            return ValidationOutcome.failed(nsid, Stage.Validate, str(e))
        return ValidationOutcome.valid(nsid)

    async def validate(self, nsid: str, record: Dict[str, Any]) -> ValidationOutcome:
        """Discover the schema for ``nsid`` and validate ``record`` against it."""
        try:
            schema = await self.resolve_schema(nsid)
            outcome = self.validate_document(nsid, schema, record)
        except SchemaDiscoveryFailed as e:
            logger.info("Schema discovery for %s failed at %s: %s", nsid, e.stage, e.reason)
            outcome = ValidationOutcome.failed(nsid, Stage(e.stage), e.reason)
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Unexpected error validating %s", nsid)
            outcome = ValidationOutcome.failed(nsid, Stage.Validate, "unexpected error")

        self.metrics_client.increment(
            "atlas.lexicon.validate",
            1,
            tag_dict={"state": outcome.state, "stage": outcome.stage or ""},
        )
        return outcome
