"""AT Protocol handle, DID and repository host resolution across federated networks.

Every lookup walks the network registry in order, bounding each attempt with a
timeout, and stops at the first network that answers. A network that times out
or errors only ends its own attempt; ResolutionFailed is raised once every
network has been tried.
"""

from enum import IntEnum
import logging
from typing import Any, Awaitable, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

from aiohttp import ClientError, ClientSession
from pydantic import BaseModel
import sentry_sdk

from social.atlas.app.metrics import MetricsClient, NoOpMetricsClient
from social.atlas.atproto.cache import TTLCache, cache_key
from social.atlas.atproto.xrpc import (
    DESCRIBE_REPO,
    IDENTITY_TIMEOUT,
    RESOLVE_HANDLE,
    get_json,
    xrpc_url,
)
from social.atlas.errors import ResolutionFailed
from social.atlas.model.network import (
    DEFAULT_DIRECTORY_URL,
    DEFAULT_PROFILE_API_URL,
    DEFAULT_REPO_HOST_URL,
    DEFAULT_WEB_URL,
    NetworkConfig,
    NetworkEndpoints,
    NetworkRegistry,
)
from social.atlas.model.record import Identity

logger = logging.getLogger(__name__)

PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"
PDS_SERVICE_ID = "#atproto_pds"

DEFAULT_INFRA_SUFFIXES: Dict[str, str] = {
    "bsky.network": "bsky.social",
    "bsky.social": "bsky.social",
}
"""Hostname suffixes of known repository-host infrastructure and their network."""


class SubjectType(IntEnum):
    """AT Protocol subject type enumeration.

    Identifies whether a subject is a DID or handle requiring resolution.
    """

    did_method_plc = 1
    did_method_web = 2
    hostname = 3


class ParsedSubject(BaseModel):
    """Parsed AT Protocol subject input."""

    subject_type: SubjectType
    subject: str


def parse_input(subject: str) -> ParsedSubject:
    """Parse and classify AT Protocol subject input.

    Normalizes input by removing prefixes and classifies as DID or handle.

    Args:
        subject: Raw subject string (handle, DID, or prefixed)

    Returns:
        ParsedSubject with type and normalized string
    """
    subject = subject.strip()
    subject = subject.removeprefix("at://")
    subject = subject.removeprefix("@")

    if subject.startswith("did:plc:"):
        return ParsedSubject(subject_type=SubjectType.did_method_plc, subject=subject)
    elif subject.startswith("did:web:"):
        return ParsedSubject(subject_type=SubjectType.did_method_web, subject=subject)

    return ParsedSubject(
        subject_type=SubjectType.hostname, subject=subject.lower().rstrip(".")
    )


def handle_predicate(value: str) -> bool:
    """Check if an ``alsoKnownAs`` entry is an AT Protocol handle reference."""
    return value is not None and value.startswith("at://")


def pds_predicate(value: Dict[str, Any]) -> bool:
    """Check if a DID document service entry is the repository host.

    Args:
        value: Service dictionary from DID document

    Returns:
        True if the service is typed AtprotoPersonalDataServer (or has the
        ``#atproto_pds`` id) and carries an endpoint
    """
    return (
        isinstance(value, dict)
        and (
            value.get("type", None) == PDS_SERVICE_TYPE
            or str(value.get("id", "")).endswith(PDS_SERVICE_ID)
        )
        and isinstance(value.get("serviceEndpoint"), str)
    )


def pds_endpoint(document: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Extract the repository host endpoint from a DID document."""
    if not isinstance(document, Mapping):
        return None
    services = document.get("service") or []
    if not isinstance(services, list):
        return None
    service = next(filter(pds_predicate, services), None)
    if service is None:
        return None
    return service["serviceEndpoint"].rstrip("/")


def handle_from_document(document: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not isinstance(document, Mapping):
        return None
    aliases = document.get("alsoKnownAs") or []
    if not isinstance(aliases, list):
        return None
    handle = next(filter(handle_predicate, aliases), None)
    if handle is None:
        return None
    return handle.removeprefix("at://")


def did_web_document_url(did: str) -> Optional[str]:
    """Build the did.json URL for a did:web DID.

    ``did:web:example.com`` maps to ``https://example.com/.well-known/did.json``
    and ``did:web:example.com:user:alice`` to
    ``https://example.com/user/alice/did.json``.
    """
    if not did.startswith("did:web:"):
        return None
    parts = did.removeprefix("did:web:").split(":")
    if len(parts[0]) == 0 or any(len(part) == 0 for part in parts):
        return None

    parts[0] = unquote(parts[0])
    if len(parts) == 1:
        parts.append(".well-known")

    return "https://{inner}/did.json".format(inner="/".join(parts))


def map_host_to_network_config(
    repo_host_url: str,
    registry: Optional[NetworkRegistry] = None,
    infra_suffixes: Optional[Mapping[str, str]] = None,
) -> NetworkEndpoints:
    """Map a repository host URL to the endpoints of the network it belongs to.

    Pure and deterministic: exact hostname match against registered networks
    (their key or their repository host), then known infrastructure suffixes,
    then the public Bluesky defaults.
    """
    if registry is None:
        registry = NetworkRegistry.default()
    if infra_suffixes is None:
        infra_suffixes = DEFAULT_INFRA_SUFFIXES

    default = NetworkEndpoints(
        repo_host_url=DEFAULT_REPO_HOST_URL,
        directory_url=DEFAULT_DIRECTORY_URL,
        profile_api_url=DEFAULT_PROFILE_API_URL,
        web_url=DEFAULT_WEB_URL,
    )

    try:
        hostname = urlparse(repo_host_url.strip()).hostname
    except (AttributeError, ValueError):
        return default
    if not hostname:
        return default

    repo_host_url = repo_host_url.strip().rstrip("/")

    def endpoints_for(network: Optional[NetworkConfig]) -> NetworkEndpoints:
        if network is None:
            return default.model_copy(update={"repo_host_url": repo_host_url})
        return NetworkEndpoints(
            repo_host_url=repo_host_url,
            directory_url=network.directory_url,
            profile_api_url=network.profile_api_url,
            web_url=network.web_url or DEFAULT_WEB_URL,
        )

    for network in registry.list_networks():
        network_host = (
            urlparse(network.repo_host_url).hostname if network.repo_host_url else None
        )
        if hostname == network.key or hostname == network_host:
            return endpoints_for(network)

    for suffix, network_key in infra_suffixes.items():
        if hostname == suffix or hostname.endswith(f".{suffix}"):
            return endpoints_for(registry.get(network_key))

    return endpoints_for(None)


class IdentityResolver:
    """Resolves handles and DIDs against an ordered registry of networks.

    Handles listed in ``pinned_handles`` (handle -> network key) are tried
    against their pinned network first.
    """

    def __init__(
        self,
        session: ClientSession,
        registry: NetworkRegistry,
        pinned_handles: Optional[Mapping[str, str]] = None,
        timeout: float = IDENTITY_TIMEOUT,
        cache: Optional[TTLCache] = None,
        metrics_client: Optional[MetricsClient] = None,
        infra_suffixes: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.session = session
        self.registry = registry
        self.pinned_handles = {
            parse_input(handle).subject: network
            for handle, network in (pinned_handles or {}).items()
        }
        self.timeout = timeout
        self.cache = cache
        self.metrics_client = metrics_client or NoOpMetricsClient()
        self.infra_suffixes = dict(infra_suffixes or DEFAULT_INFRA_SUFFIXES)

    async def _attempt(
        self, kind: str, target: str, request: Awaitable[Optional[Any]]
    ) -> Optional[Any]:
        """Await one bounded network attempt, turning its failure into None."""
        outcome = "error"
        try:
            result = await request
            outcome = "ok" if result is not None else "miss"
            return result
        except (ClientError, TimeoutError, ValueError) as e:
            logger.debug("%s lookup against %s failed: %r", kind, target, e)
            return None
        except Exception as e:
            sentry_sdk.capture_exception(e)
            logger.exception("Unexpected error during %s lookup against %s", kind, target)
            return None
        finally:
            self.metrics_client.increment(
                "atlas.resolve.attempt",
                1,
                tag_dict={"kind": kind, "network": target, "outcome": outcome},
            )

    async def _resolve_handle_on(
        self, network: NetworkConfig, handle: str
    ) -> Optional[str]:
        body = await get_json(
            self.session,
            xrpc_url(network.profile_api_url, RESOLVE_HANDLE),
            params={"handle": handle},
            timeout=self.timeout,
        )
        if not isinstance(body, dict):
            return None
        did = body.get("did")
        if not isinstance(did, str) or not did.startswith("did:"):
            return None
        return did

    async def resolve_handle_to_did(self, handle: str) -> str:
        """Resolve a handle to a DID, trying each network in turn.

        DIDs are returned unchanged.

        Raises:
            ResolutionFailed: if no network resolved the handle
        """
        parsed = parse_input(handle)
        if parsed.subject_type != SubjectType.hostname:
            return parsed.subject
        if len(parsed.subject) == 0 or "." not in parsed.subject:
            raise ResolutionFailed.invalid_subject(handle)

        for network in self.registry.ordered_for(parsed.subject, self.pinned_handles):
            did = await self._attempt(
                "handle", network.key, self._resolve_handle_on(network, parsed.subject)
            )
            if did is not None:
                logger.debug("Resolved %s to %s via %s", parsed.subject, did, network.key)
                return did

        raise ResolutionFailed.handle(parsed.subject)

    def _directories(self) -> Tuple[Tuple[str, str], ...]:
        seen: Dict[str, str] = {}
        for network in self.registry.list_networks():
            seen.setdefault(network.directory_url, network.key)
        return tuple((url, key) for url, key in seen.items())

    async def resolve_did_document(self, did: str) -> Dict[str, Any]:
        """Fetch the DID document for a did:plc or did:web DID.

        did:plc documents come from the first directory that answers;
        did:web documents from the DID's own host.

        Raises:
            ResolutionFailed: unsupported method or no document found
        """
        if did.startswith("did:plc:"):
            for directory_url, key in self._directories():
                document = await self._attempt(
                    "did",
                    key,
                    get_json(self.session, f"{directory_url}/{did}", timeout=self.timeout),
                )
                if isinstance(document, dict):
                    return document
            raise ResolutionFailed.did_document(did)

        if did.startswith("did:web:"):
            url = did_web_document_url(did)
            if url is None:
                raise ResolutionFailed.invalid_subject(did)
            document = await self._attempt(
                "did", "did:web", get_json(self.session, url, timeout=self.timeout)
            )
            if isinstance(document, dict):
                return document
            raise ResolutionFailed.did_document(did)

        raise ResolutionFailed.unsupported_did(did)

    async def _describe_repo_fallback(
        self, did: str
    ) -> Optional[Tuple[str, Optional[str]]]:
        """Ask each network to describe the repo; returns (repo host, handle)."""
        for network in self.registry.list_networks():
            host = network.repo_host_url or network.profile_api_url
            body = await self._attempt(
                "describe",
                network.key,
                get_json(
                    self.session,
                    xrpc_url(host, DESCRIBE_REPO),
                    params={"repo": did},
                    timeout=self.timeout,
                ),
            )
            if not isinstance(body, dict):
                continue
            pds = pds_endpoint(body.get("didDoc"))
            if pds is not None:
                return pds, body.get("handle")
        return None

    async def _resolve_repo_host(
        self, did: str
    ) -> Tuple[str, Optional[Dict[str, Any]], Optional[str]]:
        if not did.startswith("did:plc:") and not did.startswith("did:web:"):
            raise ResolutionFailed.unsupported_did(did)

        document: Optional[Dict[str, Any]] = None
        try:
            document = await self.resolve_did_document(did)
        except ResolutionFailed as e:
            logger.debug("Directory lookup failed for %s: %s", did, e)

        pds = pds_endpoint(document)
        handle = handle_from_document(document)
        if pds is None:
            described = await self._describe_repo_fallback(did)
            if described is None:
                raise ResolutionFailed.repo_host(did)
            pds, described_handle = described
            handle = handle or described_handle

        if self.cache is not None:
            await self.cache.set(cache_key("pds", did), pds)
        return pds, document, handle

    async def resolve_pds_for_did(self, did: str) -> str:
        """Resolve a DID to its repository host URL.

        Directory services are consulted first; the describeRepo fallback is
        used only when every directory fails.

        Raises:
            ResolutionFailed: if no repository host could be found
        """
        if self.cache is not None:
            cached = await self.cache.get(cache_key("pds", did))
            if isinstance(cached, str):
                return cached
        pds, _, _ = await self._resolve_repo_host(did)
        return pds

    async def resolve_identity(self, subject: str) -> Identity:
        """Resolve a handle or DID to its DID, current handle and repository host.

        Raises:
            ResolutionFailed: if the handle or repository host cannot be resolved
        """
        parsed = parse_input(subject)
        did = await self.resolve_handle_to_did(subject)
        pds, _, handle = await self._resolve_repo_host(did)
        if handle is None and parsed.subject_type == SubjectType.hostname:
            handle = parsed.subject
        return Identity(did=did, handle=handle or did, repo_host=pds)

    def endpoints_for(self, repo_host_url: str) -> NetworkEndpoints:
        return map_host_to_network_config(
            repo_host_url, self.registry, self.infra_suffixes
        )
