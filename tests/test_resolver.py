"""Tests for VendorResolver."""

from __future__ import annotations

import pytest

from carbon_hub.gateway.resolver import VendorResolver
from carbon_hub.gateway.types import Portfolio, Project


class TestVendorResolver:
    @pytest.fixture
    def vendors(self):
        return ["cnaught", "toucan"]

    @pytest.fixture
    def resolver(self, vendors):
        return VendorResolver(lambda: vendors)

    def test_prefix_match(self, resolver):
        assert resolver.resolve("cnaught_abc123") == "cnaught"
        assert resolver.resolve("toucan_0xabc") == "toucan"

    def test_unknown_id_is_unresolved(self, resolver):
        assert resolver.resolve("abc123") is None
        assert resolver.resolve("") is None
        assert resolver.resolve(None) is None

    def test_prefix_requires_underscore(self, resolver):
        assert resolver.resolve("cnaughtabc") is None

    def test_longest_prefix_wins(self, vendors, resolver):
        vendors.append("cnaught_eu")
        assert resolver.resolve("cnaught_eu_pf1") == "cnaught_eu"
        assert resolver.resolve("cnaught_pf1") == "cnaught"

    def test_registry_changes_are_seen(self, vendors, resolver):
        assert resolver.resolve("patch_p1") is None
        vendors.append("patch")
        assert resolver.resolve("patch_p1") == "patch"

    def test_remembered_ids(self, resolver):
        resolver.remember([Project(id="abc123", vendor="toucan", name="T")])
        assert resolver.resolve("abc123") == "toucan"
        assert len(resolver) == 1

    def test_remember_indexes_nested_projects(self, resolver):
        portfolio = Portfolio(id="pf1", vendor="cnaught", name="Mix", projects=[{"id": "p9", "name": "Nested"}])
        resolver.remember([portfolio])
        assert resolver.resolve("pf1") == "cnaught"
        assert resolver.resolve("p9") == "cnaught"

    def test_prefix_beats_remembered_id(self, resolver):
        resolver.remember([Project(id="cnaught_x", vendor="toucan", name="T")])
        assert resolver.resolve("cnaught_x") == "cnaught"

    def test_forget_vendor(self, resolver):
        resolver.remember([Project(id="a", vendor="cnaught", name="A"), Project(id="b", vendor="toucan", name="B")])
        resolver.forget_vendor("cnaught")
        assert resolver.resolve("a") is None
        assert resolver.resolve("b") == "toucan"

    def test_clear(self, resolver):
        resolver.remember([Project(id="a", vendor="cnaught", name="A")])
        resolver.clear()
        assert len(resolver) == 0
