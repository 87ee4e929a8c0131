"""Tests for the Normalizer."""

from __future__ import annotations

from carbon_hub.gateway.normalizer import normalize
from carbon_hub.gateway.types import EntityType, Portfolio, Project, Quote


class TestNormalize:
    def test_maps_are_tagged_with_calling_vendor(self, make_project):
        result = normalize([make_project("p1"), make_project("p2")], EntityType.PROJECTS, "cnaught")
        assert [p.id for p in result] == ["p1", "p2"]
        assert all(isinstance(p, Project) and p.vendor == "cnaught" for p in result)

    def test_accepts_string_entity_type(self, make_project):
        assert len(normalize([make_project("p1")], "projects", "toucan")) == 1

    def test_unwraps_data_envelope(self, make_project):
        result = normalize({"data": [make_project("p1")]}, EntityType.PROJECTS, "cnaught")
        assert [p.id for p in result] == ["p1"]

    def test_single_item(self):
        raw = {"id": "q1", "amount_kg": 10, "total_price": 2.0}
        result = normalize(raw, EntityType.QUOTES, "cnaught")
        assert len(result) == 1
        assert isinstance(result[0], Quote)

    def test_none_is_empty(self):
        assert normalize(None, EntityType.PORTFOLIOS, "cnaught") == []

    def test_invalid_items_are_dropped(self, make_project):
        raw = [
            make_project("p1"),
            make_project("", name="no id"),
            make_project("p3", price_per_kg=-1),
            make_project("p4", price_per_kg="cheap"),
            "garbage",
        ]
        result = normalize(raw, EntityType.PROJECTS, "cnaught")
        assert [p.id for p in result] == ["p1"]

    def test_canonical_objects_keep_their_vendor(self):
        project = Project(id="p1", vendor="toucan", name="Token")
        result = normalize([project], EntityType.PROJECTS, "cnaught")
        assert result == [project]
        assert result[0].vendor == "toucan"

    def test_canonical_objects_without_vendor_are_filled(self):
        portfolio = Portfolio(id="pf1", name="Mix", projects=[Project(id="p1", name="A")])
        result = normalize([portfolio], EntityType.PORTFOLIOS, "cnaught")
        assert result[0].vendor == "cnaught"
        assert result[0].projects[0].vendor == "cnaught"

    def test_idempotent(self, make_project):
        once = normalize([make_project("p1"), make_project("p2")], EntityType.PROJECTS, "cnaught")
        twice = normalize(once, EntityType.PROJECTS, "toucan")
        assert [(p.vendor, p.id) for p in twice] == [(p.vendor, p.id) for p in once]

    def test_portfolio_projects_are_built(self, make_project):
        raw = {"id": "pf1", "name": "Mix", "projects": [make_project("p1")]}
        result = normalize(raw, EntityType.PORTFOLIOS, "cnaught")
        assert result[0].projects[0].vendor == "cnaught"

    def test_input_objects_are_not_mutated(self):
        nested = Project(id="p1", name="A")
        portfolio = Portfolio(id="pf1", name="Mix", projects=[nested])

        result = normalize([portfolio], EntityType.PORTFOLIOS, "cnaught")

        assert result[0] is not portfolio
        assert result[0].projects[0] is not nested
        assert portfolio.vendor == ""
        assert nested.vendor == ""

    def test_fully_tagged_objects_are_returned_as_is(self):
        portfolio = Portfolio(id="pf1", vendor="toucan", name="Pool", projects=[Project(id="p1", vendor="toucan", name="A")])
        assert normalize([portfolio], EntityType.PORTFOLIOS, "cnaught")[0] is portfolio
