"""Tests for query intent validation."""

import pytest
from pydantic import ValidationError

from cortex.query.intent import Aggregation, Operation, QueryIntent


class TestQueryIntent:
    """Tests for QueryIntent coercion."""

    def test_defaults(self):
        intent = QueryIntent()
        assert intent.operation == Operation.SAMPLE
        assert intent.aggregation == Aggregation.SUM
        assert intent.limit == 10
        assert intent.ascending is False
        assert intent.warnings == ()

    @pytest.mark.parametrize(
        "alias,expected",
        [
            ("top_n", Operation.RANK),
            ("ranking", Operation.RANK),
            ("trend_analysis", Operation.TREND),
            ("comparison", Operation.AGGREGATE),
            ("category_analysis", Operation.AGGREGATE),
            ("group_by", Operation.AGGREGATE),
            ("RANK", Operation.RANK),
        ],
    )
    def test_operation_aliases(self, alias, expected):
        assert QueryIntent(operation=alias).operation == expected

    def test_unknown_operation_becomes_sample(self):
        intent = QueryIntent(operation="forecast", metrics=["revenue"])
        assert intent.operation == Operation.SAMPLE
        assert any("forecast" in w for w in intent.warnings)

    def test_unknown_aggregation_becomes_sum(self):
        """An unrecognized aggregation never rejects the query."""
        intent = QueryIntent(operation="aggregate", aggregation="median")
        assert intent.aggregation == Aggregation.SUM
        assert any("median" in w for w in intent.warnings)

    def test_aggregation_aliases(self):
        assert QueryIntent(aggregation="average").aggregation == Aggregation.AVG

    def test_metrics_deduplicated_in_order(self):
        intent = QueryIntent(metrics=["revenue", "cost", "revenue", " ", "units"])
        assert intent.metrics == ("revenue", "cost", "units")
        assert intent.primary_metric == "revenue"

    def test_single_metric_string(self):
        assert QueryIntent(metrics="revenue").metrics == ("revenue",)

    @pytest.mark.parametrize("limit", [0, -5, "many", True])
    def test_invalid_limit_uses_default(self, limit):
        intent = QueryIntent(limit=limit)
        assert intent.limit == 10
        assert intent.warnings

    def test_numeric_string_limit(self):
        assert QueryIntent(limit="25").limit == 25

    def test_sort_direction_text(self):
        assert QueryIntent(order="asc").ascending is True
        assert QueryIntent(sort="desc").ascending is False

    def test_frozen(self):
        intent = QueryIntent()
        with pytest.raises(ValidationError):
            intent.limit = 5


class TestMissingFields:
    """Tests for QueryIntent.missing_fields()."""

    def test_sample_needs_nothing(self):
        assert QueryIntent(operation="sample").missing_fields() == []

    def test_rank_needs_metric(self):
        assert QueryIntent(operation="rank").missing_fields() == ["metric"]

    def test_aggregate_needs_metric_and_dimension(self):
        assert QueryIntent(operation="aggregate").missing_fields() == ["metric", "dimension"]

    def test_trend_uses_time_dimension(self):
        assert QueryIntent(operation="trend", metrics=["revenue"]).missing_fields() == [
            "time_dimension"
        ]
        intent = QueryIntent(operation="trend", metrics=["revenue"], time_dimension="day")
        assert intent.missing_fields() == []
        assert intent.temporal_dimension == "day"
