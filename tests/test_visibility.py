"""Tests for showIf rule evaluation."""

import pytest

from app.domain.funnels.schemas import ConditionalRule
from app.domain.funnels.visibility import is_step_visible


class TestNoRule:
    def test_missing_rule_is_visible(self):
        assert is_step_visible({"tier": "pro"}, None) is True

    def test_empty_mapping_rule_is_visible(self):
        assert is_step_visible({}, {}) is True


class TestEquality:
    def test_eq_matches(self):
        rule = ConditionalRule(field="tier", operator="eq", value="pro")
        assert is_step_visible({"tier": "pro"}, rule) is True

    def test_eq_rejects_other_value(self):
        rule = ConditionalRule(field="tier", operator="eq", value="pro")
        assert is_step_visible({"tier": "starter"}, rule) is False

    def test_eq_is_strict_about_types(self):
        rule = ConditionalRule(field="seats", operator="eq", value="3")
        assert is_step_visible({"seats": 3}, rule) is False

    def test_missing_field_is_not_none(self):
        rule = ConditionalRule(field="tier", operator="eq", value=None)
        assert is_step_visible({}, rule) is False
        assert is_step_visible({"tier": None}, rule) is True

    def test_missing_field_passes_neq_none(self):
        rule = ConditionalRule(field="tier", operator="neq", value=None)
        assert is_step_visible({}, rule) is True

    @pytest.mark.parametrize("answer,value", [(True, 1), (False, 0), (1, True), (0, False)])
    def test_booleans_never_equal_numbers(self, answer, value):
        rule = ConditionalRule(field="agree", operator="eq", value=value)
        assert is_step_visible({"agree": answer}, rule) is False

    def test_int_and_float_compare_by_value(self):
        rule = ConditionalRule(field="seats", operator="eq", value=3)
        assert is_step_visible({"seats": 3.0}, rule) is True

    @pytest.mark.parametrize(
        "data,value",
        [
            ({"tier": "pro"}, "pro"),
            ({"tier": "starter"}, "pro"),
            ({}, "pro"),
            ({"tier": None}, None),
            ({"tier": ["a"]}, ["a"]),
        ],
    )
    def test_neq_is_complement_of_eq(self, data, value):
        eq = ConditionalRule(field="tier", operator="eq", value=value)
        neq = ConditionalRule(field="tier", operator="neq", value=value)
        assert is_step_visible(data, eq) is not is_step_visible(data, neq)


class TestMembership:
    def test_in_matches_member(self):
        rule = ConditionalRule(field="stage", operator="in", value=["idea", "launch"])
        assert is_step_visible({"stage": "launch"}, rule) is True

    def test_nin_rejects_member(self):
        rule = ConditionalRule(field="stage", operator="nin", value=["idea", "launch"])
        assert is_step_visible({"stage": "launch"}, rule) is False

    @pytest.mark.parametrize("stage", ["idea", "scale", None])
    def test_nin_is_complement_of_in(self, stage):
        values = ["idea", "launch"]
        in_rule = ConditionalRule(field="stage", operator="in", value=values)
        nin_rule = ConditionalRule(field="stage", operator="nin", value=values)
        data = {"stage": stage}
        assert is_step_visible(data, in_rule) is not is_step_visible(data, nin_rule)

    def test_non_list_value_hides_for_both(self):
        in_rule = ConditionalRule(field="stage", operator="in", value="idea")
        nin_rule = ConditionalRule(field="stage", operator="nin", value="idea")
        assert is_step_visible({"stage": "idea"}, in_rule) is False
        assert is_step_visible({"stage": "idea"}, nin_rule) is False

    def test_membership_does_not_mix_booleans_and_numbers(self):
        in_rule = ConditionalRule(field="agree", operator="in", value=[1, 2])
        nin_rule = ConditionalRule(field="agree", operator="nin", value=[1, 2])
        assert is_step_visible({"agree": True}, in_rule) is False
        assert is_step_visible({"agree": True}, nin_rule) is True

    def test_missing_field_is_not_a_member_of_none_list(self):
        rule = ConditionalRule(field="stage", operator="in", value=[None])
        assert is_step_visible({}, rule) is False
        assert is_step_visible({"stage": None}, rule) is True


class TestUnknownOperator:
    def test_unknown_operator_fails_open(self, caplog):
        rule = ConditionalRule(field="tier", operator="gte", value=3)
        assert is_step_visible({"tier": 1}, rule) is True
        assert "Unknown showIf operator" in caplog.text

    def test_mapping_rules_are_accepted(self):
        rule = {"field": "tier", "operator": "eq", "value": "pro"}
        assert is_step_visible({"tier": "pro"}, rule) is True
        assert is_step_visible({"tier": "free"}, rule) is False
