"""
Unit tests for social.atlas.model.network

Tests cover NetworkConfig validation and aliases, and NetworkRegistry ordering,
loading and pinning.
"""

import json

import pytest
from pydantic import ValidationError

from social.atlas.model.network import (
    DEFAULT_DIRECTORY_URL,
    NetworkConfig,
    NetworkRegistry,
)


class TestNetworkConfig:
    """Test suite for NetworkConfig."""

    def test_aliases(self):
        """Test networks.json field names populate the model."""
        network = NetworkConfig.model_validate(
            {
                "key": "syu.is",
                "plc": "https://plc.syu.is",
                "bsky": "https://bsky.syu.is",
                "web": "https://web.syu.is",
                "pds": "https://syu.is",
            }
        )
        assert network.directory_url == "https://plc.syu.is"
        assert network.profile_api_url == "https://bsky.syu.is"
        assert network.web_url == "https://web.syu.is"
        assert network.repo_host_url == "https://syu.is"

    def test_field_names_accepted(self):
        """Test models can also be built by field name."""
        network = NetworkConfig(
            key="x.test",
            directory_url="https://plc.x.test",
            profile_api_url="https://api.x.test",
        )
        assert network.web_url == ""
        assert network.repo_host_url is None

    def test_trailing_slash_stripped(self):
        """Test endpoint URLs lose their trailing slashes."""
        network = NetworkConfig.model_validate(
            {"key": "x.test", "plc": "https://plc.x.test/", "bsky": " https://api.x.test// "}
        )
        assert network.directory_url == "https://plc.x.test"
        assert network.profile_api_url == "https://api.x.test"

    @pytest.mark.parametrize("field", ["plc", "bsky"])
    def test_empty_required_endpoint_rejected(self, field):
        """Test directory and profile API URLs must be non-empty."""
        data = {"key": "x.test", "plc": "https://plc.x.test", "bsky": "https://api.x.test"}
        data[field] = "  "
        with pytest.raises(ValidationError):
            NetworkConfig.model_validate(data)

    def test_frozen(self):
        """Test network configs are immutable."""
        network = NetworkConfig(
            key="x.test",
            directory_url="https://plc.x.test",
            profile_api_url="https://api.x.test",
        )
        with pytest.raises(ValidationError):
            network.key = "y.test"


class TestNetworkRegistry:
    """Test suite for NetworkRegistry."""

    def test_order_preserved(self, registry):
        """Test networks are listed in insertion order."""
        assert [n.key for n in registry.list_networks()] == ["alpha.test", "beta.test"]
        assert [n.key for n in registry] == ["alpha.test", "beta.test"]
        assert len(registry) == 2

    def test_get_and_contains(self, registry):
        """Test lookup by key."""
        assert registry.get("beta.test").directory_url == "https://plc.beta.test"
        assert registry.get("gamma.test") is None
        assert "alpha.test" in registry
        assert "gamma.test" not in registry

    def test_duplicate_rejected(self):
        """Test duplicate keys are a configuration error."""
        network = NetworkConfig(
            key="x.test",
            directory_url="https://plc.x.test",
            profile_api_url="https://api.x.test",
        )
        with pytest.raises(ValueError):
            NetworkRegistry([network, network])

    def test_default_registry(self):
        """Test the built-in registry starts with the public network."""
        registry = NetworkRegistry.default()
        first = registry.list_networks()[0]
        assert first.key == "bsky.social"
        assert first.directory_url == DEFAULT_DIRECTORY_URL
        assert "syu.is" in registry

    def test_from_file(self, tmp_path):
        """Test loading a networks.json file."""
        path = tmp_path / "networks.json"
        path.write_text(
            json.dumps(
                {
                    "one.test": {"plc": "https://plc.one.test", "bsky": "https://api.one.test"},
                    "two.test": {"plc": "https://plc.two.test", "bsky": "https://api.two.test"},
                }
            )
        )
        registry = NetworkRegistry.from_file(str(path))
        assert [n.key for n in registry] == ["one.test", "two.test"]

    def test_ordered_for_unpinned(self, registry):
        """Test unpinned handles keep registry order."""
        ordered = registry.ordered_for("alice.beta.test", {"bob.beta.test": "beta.test"})
        assert [n.key for n in ordered] == ["alpha.test", "beta.test"]

    def test_ordered_for_pinned(self, registry):
        """Test a pinned handle tries its network first, then the rest in order."""
        ordered = registry.ordered_for("bob.beta.test", {"bob.beta.test": "beta.test"})
        assert [n.key for n in ordered] == ["beta.test", "alpha.test"]

    def test_ordered_for_unknown_pin(self, registry):
        """Test a pin to an unregistered network is ignored."""
        ordered = registry.ordered_for("bob.beta.test", {"bob.beta.test": "gamma.test"})
        assert [n.key for n in ordered] == ["alpha.test", "beta.test"]
