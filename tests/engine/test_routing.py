# tests/engine/test_routing.py
"""Tests for RouteEvaluator branch selection."""

import pytest
from hypothesis import given
from hypothesis import strategies as st

from hubflow.contracts.definition import RouteCondition, RouteConfig
from hubflow.engine.routing import MISSING, RouteEvaluator, get_path, has_path


def _cond(field: str, cmp: str, value: object = None) -> RouteCondition:
    return RouteCondition.model_validate({"field": field, "cmp": cmp, "value": value})


class TestGetPath:
    def test_nested_and_list_index(self) -> None:
        record = {"customer": {"address": {"city": "Oslo"}}, "items": [{"sku": "A"}, {"sku": "B"}]}

        assert get_path(record, "customer.address.city") == "Oslo"
        assert get_path(record, "items.1.sku") == "B"
        assert get_path(record, "items.-1.sku") == "B"
        assert get_path(record, "items.5.sku") is MISSING
        assert get_path(record, "customer.phone") is MISSING

    def test_null_is_present(self) -> None:
        assert has_path({"a": None}, "a")
        assert not has_path({}, "a")


class TestMatches:
    @pytest.mark.parametrize(
        ("condition", "record", "expected"),
        [
            (("amount", "gt", 10), {"amount": 11}, True),
            (("amount", "gt", 10), {}, False),
            (("amount", "lt", 1), {}, True),
            (("amount", "gte", "100"), {"amount": 100}, True),
            (("status", "eq", "new"), {"status": "new"}, True),
            (("status", "eq", None), {}, False),
            (("status", "ne", "new"), {}, True),
            (("country", "in", ["NO", "SE"]), {"country": "SE"}, True),
            (("country", "in", "NO, SE"), {"country": "SE"}, True),
            (("country", "notIn", ["NO"]), {"country": "SE"}, True),
            (("tags", "contains", "vip"), {"tags": ["vip", "eu"]}, True),
            (("name", "contains", "ada"), {"name": "adams"}, True),
            (("name", "notContains", "bob"), {"name": "adams"}, True),
            (("sku", "startsWith", "A-"), {"sku": "A-100"}, True),
            (("sku", "endsWith", "00"), {"sku": "A-100"}, True),
            (("email", "matches", r"@example\.com$"), {"email": "a@example.com"}, True),
            (("email", "regex", r"^\d+$"), {}, False),
            (("email", "exists"), {"email": None}, True),
            (("email", "isNull"), {"email": None}, True),
            (("email", "isNull"), {}, True),
        ],
    )
    def test_comparators(self, condition: tuple, record: dict, expected: bool) -> None:
        assert RouteEvaluator().matches(record, _cond(*condition)) is expected


class TestEvaluateAndPartition:
    @pytest.fixture
    def config(self) -> RouteConfig:
        return RouteConfig.model_validate(
            {
                "branches": [
                    {"name": "large", "when": [{"field": "amount", "cmp": "gte", "value": 1000}]},
                    {
                        "name": "eu_medium",
                        "when": [
                            {"field": "amount", "cmp": "gte", "value": 100},
                            {"field": "region", "cmp": "eq", "value": "eu"},
                        ],
                    },
                ],
            }
        )

    def test_first_match_wins(self, config: RouteConfig) -> None:
        evaluator = RouteEvaluator()

        assert evaluator.evaluate({"amount": 5000, "region": "eu"}, config) == "large"
        assert evaluator.evaluate({"amount": 500, "region": "eu"}, config) == "eu_medium"
        assert evaluator.evaluate({"amount": 500, "region": "us"}, config) is None

    def test_default_branch(self, config: RouteConfig) -> None:
        with_default = config.model_copy(update={"default_branch": "rest"})
        assert RouteEvaluator().evaluate({"amount": 1}, with_default) == "rest"

    def test_partition_preserves_order_and_drops(self, config: RouteConfig) -> None:
        records = [{"id": 1, "amount": 2000}, {"id": 2, "amount": 10}, {"id": 3, "amount": 3000}]

        decision = RouteEvaluator().partition(records, config)

        assert decision.counts() == {"large": 2, "eu_medium": 0}
        assert [r["id"] for r in decision.branches["large"]] == [1, 3]
        assert decision.dropped == [{"id": 2, "amount": 10}]


route_records = st.fixed_dictionaries(
    {
        "amount": st.one_of(st.none(), st.integers(min_value=-10, max_value=5000)),
        "region": st.sampled_from(["eu", "us", "apac"]),
        "code": st.text(alphabet="ABCxyz-", max_size=6),
    }
)


class TestDeterminism:
    CONFIG = RouteConfig.model_validate(
        {
            "branches": [
                {"name": "large", "when": [{"field": "amount", "cmp": "gte", "value": 1000}]},
                {
                    "name": "eu_coded",
                    "when": [
                        {"field": "region", "cmp": "eq", "value": "eu"},
                        {"field": "code", "cmp": "matches", "value": "^[A-C]+"},
                    ],
                },
                {"name": "missing_amount", "when": [{"field": "amount", "cmp": "isNull"}]},
            ],
            "defaultBranch": "rest",
        }
    )

    @given(records=st.lists(route_records, max_size=20))
    def test_same_input_same_branches(self, records: list[dict[str, object]]) -> None:
        shared = RouteEvaluator()

        first = shared.partition(records, self.CONFIG)
        again = shared.partition(records, self.CONFIG)
        fresh = RouteEvaluator().partition(records, self.CONFIG)

        assert first.branches == again.branches == fresh.branches
        assert first.dropped == again.dropped == fresh.dropped == []
        assert [shared.evaluate(r, self.CONFIG) for r in records] == [RouteEvaluator().evaluate(r, self.CONFIG) for r in records]
        assert sum(first.counts().values()) == len(records)
