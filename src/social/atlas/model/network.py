"""Federation network registry.

Each network is an independently operated AT Protocol deployment with its own
PLC directory, public profile API (AppView) and web front end. The registry is
loaded once at startup and iterated in a fixed order so that fallback between
networks is reproducible.
"""

import json
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NetworkConfig(BaseModel):
    """A single federation network.

    Accepts the ``networks.json`` field names (``plc``, ``bsky``, ``web``,
    ``pds``) as aliases.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    key: str
    directory_url: str = Field(alias="plc")
    profile_api_url: str = Field(alias="bsky")
    web_url: str = Field(alias="web", default="")
    repo_host_url: Optional[str] = Field(alias="pds", default=None)

    @field_validator("directory_url", "profile_api_url")
    @classmethod
    def require_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if len(v) == 0:
            raise ValueError("network endpoints must not be empty")
        return v

    @field_validator("web_url")
    @classmethod
    def strip_web_url(cls, v: str) -> str:
        return v.strip().rstrip("/")

    @field_validator("repo_host_url")
    @classmethod
    def strip_repo_host_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None


class NetworkEndpoints(BaseModel):
    """Endpoints to use for a user whose repository lives on a given host."""

    model_config = ConfigDict(frozen=True)

    repo_host_url: str
    directory_url: str
    profile_api_url: str
    web_url: str


DEFAULT_DIRECTORY_URL = "https://plc.directory"
DEFAULT_PROFILE_API_URL = "https://public.api.bsky.app"
DEFAULT_WEB_URL = "https://bsky.app"
DEFAULT_REPO_HOST_URL = "https://bsky.social"

DEFAULT_NETWORKS: Dict[str, Dict[str, str]] = {
    "bsky.social": {
        "plc": DEFAULT_DIRECTORY_URL,
        "bsky": DEFAULT_PROFILE_API_URL,
        "web": DEFAULT_WEB_URL,
        "pds": DEFAULT_REPO_HOST_URL,
    },
    "syu.is": {
        "plc": "https://plc.syu.is",
        "bsky": "https://bsky.syu.is",
        "web": "https://web.syu.is",
        "pds": "https://syu.is",
    },
}


class NetworkRegistry:
    """Ordered, immutable collection of :class:`NetworkConfig` keyed by domain."""

    def __init__(self, networks: Iterable[NetworkConfig]) -> None:
        ordered: Dict[str, NetworkConfig] = {}
        for network in networks:
            if network.key in ordered:
                raise ValueError(f"duplicate network: {network.key}")
            ordered[network.key] = network
        self._networks: Tuple[NetworkConfig, ...] = tuple(ordered.values())
        self._by_key = ordered

    @classmethod
    def from_mapping(cls, data: Mapping[str, Mapping[str, Any]]) -> "NetworkRegistry":
        return cls(
            NetworkConfig.model_validate({"key": key, **value})
            for key, value in data.items()
        )

    @classmethod
    def from_file(cls, path: str) -> "NetworkRegistry":
        with open(path) as fd:
            return cls.from_mapping(json.load(fd))

    @classmethod
    def default(cls) -> "NetworkRegistry":
        return cls.from_mapping(DEFAULT_NETWORKS)

    def list_networks(self) -> Tuple[NetworkConfig, ...]:
        return self._networks

    def get(self, key: str) -> Optional[NetworkConfig]:
        return self._by_key.get(key)

    def ordered_for(
        self, handle: Optional[str], pinned: Optional[Mapping[str, str]] = None
    ) -> Tuple[NetworkConfig, ...]:
        """Networks in the order they should be tried for ``handle``.

        A handle on the operator allow-list is tried against its pinned network
        first; every other network keeps registry order.
        """
        if handle is None or not pinned:
            return self._networks
        pinned_key = pinned.get(handle)
        pinned_network = self._by_key.get(pinned_key) if pinned_key else None
        if pinned_network is None:
            return self._networks
        return (pinned_network,) + tuple(
            network for network in self._networks if network.key != pinned_network.key
        )

    def __iter__(self) -> Iterator[NetworkConfig]:
        return iter(self._networks)

    def __len__(self) -> int:
        return len(self._networks)

    def __contains__(self, key: object) -> bool:
        return key in self._by_key
