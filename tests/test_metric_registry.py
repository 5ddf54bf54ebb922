"""
Tests for metric_registry.py
"""

from metric_registry import METRICS, aliases_by_specificity, get_metric, resolve_alias


class TestRegistry:
    """Lookups by key and by typed phrase."""

    def test_aliases(self):
        """Pseudonyms and canonical keys both resolve."""
        assert resolve_alias("apps").key == "APP"
        assert resolve_alias("  Penalties   Missed ").key == "PM"
        assert resolve_alias("GperAPP").key == "GperAPP"
        assert resolve_alias("tackles") is None

    def test_get_metric(self):
        """Unknown or empty keys give None."""
        assert get_metric("G").plural == "goals"
        assert get_metric(None) is None
        assert get_metric("XYZ") is None

    def test_longer_phrases_first(self):
        """Multi-word aliases are tried before single words."""
        order = [alias for alias, _ in aliases_by_specificity()]
        assert order.index("penalties scored") < order.index("scored")

    def test_labels(self):
        """Singular for one, plural otherwise."""
        spec = get_metric("A")
        assert spec.label(1) == "assist"
        assert spec.label(2) == "assists"

    def test_percentages_have_decimals(self):
        """Every percentage metric shows one decimal place."""
        for spec in METRICS.values():
            if spec.is_percentage:
                assert spec.decimal_places == 1
