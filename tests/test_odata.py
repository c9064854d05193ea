"""
Tests for the OData query string builder.
"""

from b1bridge.services.odata import (
    ODataQuery,
    any_of,
    build_query,
    contains,
    eq,
    literal,
)


class TestBuildQuery:
    """Canonical query strings."""

    def test_empty_options_give_empty_string(self):
        assert build_query({}) == ""
        assert build_query(None) == ""

    def test_filter_and_top(self):
        assert build_query({"filter": {"ItemCode": "ABC"}, "top": 10}) == (
            "?$filter=ItemCode eq 'ABC'&$top=10"
        )

    def test_top_defaults_to_100(self):
        assert build_query({"select": ["ItemCode", "ItemName"]}) == (
            "?$select=ItemCode,ItemName&$top=100"
        )

    def test_non_positive_top_is_omitted(self):
        assert build_query({"filter": {"CardType": "cCustomer"}, "top": 0}) == (
            "?$filter=CardType eq 'cCustomer'"
        )

    def test_zero_skip_is_omitted(self):
        assert "$skip" not in build_query({"top": 5, "skip": 0})
        assert build_query({"top": 5, "skip": 20}) == "?$top=5&$skip=20"

    def test_filters_joined_with_and(self):
        query = build_query({"filter": {"CardType": "cCustomer", "Valid": "tYES"}, "top": 1})
        assert query == "?$filter=CardType eq 'cCustomer' and Valid eq 'tYES'&$top=1"

    def test_clause_order(self):
        query = ODataQuery(
            select=["DocEntry"],
            filter={"CardCode": "C001"},
            top=20,
            skip=40,
            orderby="DocEntry desc",
        )
        assert build_query(query) == (
            "?$select=DocEntry&$filter=CardCode eq 'C001'&$top=20&$skip=40&$orderby=DocEntry desc"
        )

    def test_deterministic(self):
        options = {"select": ["A", "B"], "filter": {"X": 1}, "top": 3}
        assert build_query(options) == build_query(dict(options))

    def test_malformed_options_do_not_raise(self):
        assert build_query({"select": "ItemCode", "filter": ["bad"], "top": "many"}) == ""


class TestExpressions:
    """Filter expression helpers."""

    def test_literals(self):
        assert literal("O'Brien") == "'O''Brien'"
        assert literal(5) == "5"
        assert literal(True) == "true"
        assert literal(None) == "null"

    def test_contains_quotes_value(self):
        assert contains("ItemName", "bomba") == "contains(ItemName,'bomba')"

    def test_any_of_groups_and_dedupes(self):
        expr = any_of(eq("A", "x"), eq("A", "x"), eq("A", "y"))
        assert expr == "(A eq 'x' or A eq 'y')"

    def test_any_of_single_expression_is_not_wrapped(self):
        assert any_of(eq("A", "x")) == "A eq 'x'"

    def test_expressions_combine_with_filter(self):
        query = ODataQuery(filter={"CardType": "cCustomer"}, expressions=[contains("CardName", "Acme")], top=5)
        assert build_query(query) == (
            "?$filter=CardType eq 'cCustomer' and contains(CardName,'Acme')&$top=5"
        )
