"""Tests for condition evaluation."""

import pytest

from core.exceptions import ConditionEvaluationError
from integrations.base import Subject
from workflow.conditions import ConditionEvaluator
from workflow.graph import ConditionConfig


@pytest.fixture
def subject() -> Subject:
    return Subject(
        id="c-1",
        organization_id="org-1",
        stage_id="s-approved",
        tags=frozenset({"vip", "nurture"}),
        fields={"email": "ada@example.com", "company": "Analytical Engines", "value_cents": 125000, "phone": ""},
        custom_fields={"team_size": "1-5", "seats": "12", "notes": None},
    )


def evaluate(subject, field, operator, value=None):
    return ConditionEvaluator().evaluate(ConditionConfig(field=field, operator=operator, value=value), subject)


@pytest.mark.unit
class TestEquality:

    def test_equals_custom_field(self, subject):
        assert evaluate(subject, "team_size", "equals", "1-5") is True
        assert evaluate(subject, "team_size", "equals", "50+") is False

    def test_equals_compares_numbers_by_value(self, subject):
        assert evaluate(subject, "value_cents", "equals", "125000") is True
        assert evaluate(subject, "seats", "equals", 12.0) is True

    def test_equals_trims_whitespace(self, subject):
        assert evaluate(subject, "team_size", "equals", " 1-5 ") is True

    def test_not_equals(self, subject):
        assert evaluate(subject, "stage_id", "not_equals", "s-won") is True
        assert evaluate(subject, "stage_id", "not_equals", "s-approved") is False

    def test_top_level_wins_over_custom_field(self):
        subject = Subject(id="c", organization_id="o", fields={"company": "Top"}, custom_fields={"company": "Custom"})
        assert evaluate(subject, "company", "equals", "Top") is True

    def test_dotted_path(self, subject):
        assert evaluate(subject, "custom_fields.team_size", "equals", "1-5") is True


@pytest.mark.unit
class TestContains:

    def test_substring_is_case_insensitive(self, subject):
        assert evaluate(subject, "company", "contains", "ENGINES") is True
        assert evaluate(subject, "company", "contains", "steam") is False

    def test_list_membership(self, subject):
        assert evaluate(subject, "tags", "contains", "vip") is True
        assert evaluate(subject, "tags", "contains", "vi") is False


@pytest.mark.unit
class TestEmptiness:

    def test_missing_field_is_empty(self, subject):
        assert evaluate(subject, "linkedin_url", "is_empty") is True
        assert evaluate(subject, "linkedin_url", "is_not_empty") is False

    def test_blank_string_and_none_are_empty(self, subject):
        assert evaluate(subject, "phone", "is_empty") is True
        assert evaluate(subject, "notes", "is_empty") is True

    def test_present_value(self, subject):
        assert evaluate(subject, "email", "is_not_empty") is True


@pytest.mark.unit
class TestNumericComparison:

    def test_greater_and_less_than(self, subject):
        assert evaluate(subject, "value_cents", "greater_than", "100000") is True
        assert evaluate(subject, "value_cents", "less_than", 100000) is False
        assert evaluate(subject, "seats", "less_than", "12.5") is True

    def test_non_numeric_field_raises(self, subject):
        with pytest.raises(ConditionEvaluationError, match="not numeric"):
            evaluate(subject, "company", "greater_than", "3")

    def test_non_numeric_value_raises(self, subject):
        with pytest.raises(ConditionEvaluationError):
            evaluate(subject, "seats", "greater_than", "many")


@pytest.mark.unit
class TestErrors:

    @pytest.mark.parametrize("operator", ["equals", "not_equals", "contains", "greater_than", "less_than"])
    def test_missing_field_raises(self, subject, operator):
        with pytest.raises(ConditionEvaluationError, match="missing"):
            evaluate(subject, "industry", operator, "x")

    def test_unknown_operator(self, subject):
        with pytest.raises(ConditionEvaluationError, match="Unknown operator"):
            evaluate(subject, "team_size", "matches", "1-5")
