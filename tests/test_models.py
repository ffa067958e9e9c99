"""Tests for search domain types."""

import pytest
from pydantic import ValidationError

from service_search.app.models import Domain, FusedResult, ScoredHit, SearchFilters


class TestDomain:
    @pytest.mark.parametrize("raw", ["finance", "FINANCE", " Finance "])
    def test_parse_is_case_insensitive(self, raw):
        assert Domain.parse(raw) is Domain.FINANCE

    def test_parse_accepts_separators(self):
        assert Domain.parse("supply-chain") is Domain.SUPPLY_CHAIN
        assert Domain.parse("Supply Chain") is Domain.SUPPLY_CHAIN

    @pytest.mark.parametrize("raw", ["news", "", 3])
    def test_parse_rejects_unknown(self, raw):
        with pytest.raises(ValueError):
            Domain.parse(raw)


class TestSearchFilters:
    def test_domain_validated_at_boundary(self):
        assert SearchFilters(domain="regulatory").domain is Domain.REGULATORY
        with pytest.raises(ValidationError):
            SearchFilters(domain="astrology")

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            SearchFilters(tenant="x")

    def test_canonical_encoding(self):
        filters = SearchFilters(item_type_id=7, domain="TECHNICAL")
        assert filters.canonical() == '{"domain":"technical","item_type_id":"7"}'
        assert SearchFilters().canonical() == "{}"

    def test_equivalent_filters_share_encoding(self):
        assert SearchFilters(domain="Finance").canonical() == SearchFilters(domain="finance").canonical()

    def test_domain_context(self):
        assert not SearchFilters().has_domain_context
        assert not SearchFilters(item_type_id="card").has_domain_context
        assert SearchFilters(domain="asset").has_domain_context
        assert SearchFilters(category_id="scenario-1").has_domain_context

    def test_immutable(self):
        filters = SearchFilters(domain="asset")
        with pytest.raises(ValidationError):
            filters.domain = Domain.FINANCE


class TestFusedResult:
    def test_diagnostics_are_not_items(self):
        result = FusedResult([ScoredHit("a", 0.9)], retrieval_variance=0.4, rank_correlation=0.5)
        assert list(result) == [ScoredHit("a", 0.9)]
        assert len(result) == 1
        assert result.retrieval_variance == 0.4

    def test_json_round_trip_preserves_diagnostics(self):
        result = FusedResult(
            [ScoredHit("a", 0.85), ScoredHit("b", 0.35)],
            retrieval_variance=0.0144,
            rank_correlation=1 / 3,
            alpha=0.5,
            fusion="weighted",
        )
        restored = FusedResult.from_json(result.to_json().encode("utf-8"))
        assert restored == result
        assert restored.to_json() == result.to_json()
        assert restored.rank_correlation == result.rank_correlation
        assert restored.alpha == 0.5

    def test_truncated_keeps_diagnostics(self):
        result = FusedResult([ScoredHit("a", 1.0), ScoredHit("b", 0.5)], rank_correlation=0.2, alpha=0.3)
        short = result.truncated(1)
        assert short == [ScoredHit("a", 1.0)]
        assert short.rank_correlation == 0.2
        assert short.alpha == 0.3
