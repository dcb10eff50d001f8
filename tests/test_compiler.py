from datetime import date
from decimal import Decimal

import pytest

from transaction_rules.compiler import compile_condition, compile_rules
from transaction_rules.models import Comparator, Condition, Rule, RuleField


def _rule(rid: str, **kw) -> dict:
    doc = {
        "id": rid,
        "conditions": [{"field": "description", "comparator": "contains", "value": "x"}],
        "actions": [{"kind": "set_category", "value": "X"}],
    }
    doc.update(kw)
    return doc


def test_rules_are_ordered_by_priority_then_id():
    plan = compile_rules(
        [
            _rule("b", priority=10),
            _rule("a", priority=10),
            _rule("c", priority=5),
            _rule("10", priority=10),
        ]
    )
    # Ids compare as strings: "10" < "a" < "b".
    assert plan.rule_ids == ("c", "10", "a", "b")
    assert not plan.rejected


def test_disabled_rules_are_dropped_not_rejected():
    plan = compile_rules([_rule("on"), _rule("off", enabled=False)])
    assert plan.rule_ids == ("on",)
    assert plan.rejected == ()


@pytest.mark.parametrize(
    ("doc", "reason"),
    [
        (_rule("bad-cmp", conditions=[{"field": "amount", "comparator": "contains", "value": "1"}]),
         "not valid for field"),
        (_rule("bad-num", conditions=[{"field": "amount", "comparator": "greater_than", "value": "ten"}]),
         "not a number"),
        (_rule("bad-day", conditions=[{"field": "date", "comparator": "before", "value": "01/02/2024"}]),
         "ISO date"),
        (_rule("bad-range", conditions=[
            {"field": "amount", "comparator": "between", "value": "10", "value_to": "1"}]),
         "empty amount range"),
        (_rule("bad-regex", conditions=[{"field": "payee", "comparator": "matches", "value": "("}]),
         "invalid pattern"),
        (_rule("bad-action", actions=[{"kind": "set_category", "value": "  "}]),
         "non-empty value"),
        (_rule("bad-field", conditions=[{"field": "memo", "comparator": "contains", "value": "x"}]),
         "conditions"),
        (_rule("mixed", groups=[{"conditions": [{"field": "payee", "comparator": "is_empty"}]}]),
         "either conditions or groups"),
        (_rule("bad-type", conditions=[{"field": "transaction_type", "comparator": "equals", "value": "refund"}]),
         "transaction_type must be one of"),
        (_rule("bad-tags", conditions=[{"field": "tags", "comparator": "starts_with", "value": "a"}]),
         "not valid for field"),
        (_rule("bad-group", conditions=[], groups=[
            {"conditions": [
                {"field": "payee", "comparator": "is_empty"},
                {"field": "amount", "comparator": "greater_than", "value": "ten"},
            ]}]),
         "group 0 condition 1"),
    ],
)
def test_malformed_rules_are_rejected_individually(doc, reason):
    plan = compile_rules([doc, _rule("good")])

    assert plan.rule_ids == ("good",)
    assert len(plan.rejected) == 1
    err = plan.rejected[0]
    assert err.rule_id == doc["id"]
    assert reason in err.reason


def test_duplicate_ids_keep_the_first():
    plan = compile_rules([_rule("dup", priority=1), _rule("dup", priority=2)])
    assert len(plan) == 1
    assert next(iter(plan)).priority == 1
    assert plan.rejected_ids == ("dup",)


def test_non_mapping_entry_is_rejected_by_position():
    plan = compile_rules([_rule("ok"), "not a rule"])  # type: ignore[list-item]
    assert plan.rejected_ids == ("#1",)


def test_rule_models_and_documents_mix():
    model = Rule.model_validate(_rule("model", priority=1))
    plan = compile_rules([model, _rule("doc", priority=2)])
    assert plan.rule_ids == ("model", "doc")


def test_fields_used_index():
    plan = compile_rules(
        [
            _rule("a"),
            _rule("b", conditions=[{"field": "amount", "comparator": "less_than", "value": 0}]),
        ]
    )
    assert plan.fields_used[RuleField.DESCRIPTION] == ("a",)
    assert plan.fields_used[RuleField.AMOUNT] == ("b",)


def test_compile_condition_parses_operands():
    amount = compile_condition(
        Condition(field="amount", comparator="between", value="-100", value_to=-10)
    )
    assert amount.number == Decimal("-100")
    assert amount.number_to == Decimal("-10")

    day = compile_condition(Condition(field="date", comparator="after", value=date(2024, 1, 31)))
    assert day.day == date(2024, 1, 31)

    text = compile_condition(Condition(field="payee", comparator="equals", value="Shop NL"))
    assert text.text == "shop nl"
    assert text.comparator is Comparator.EQUALS


def test_value_to_only_with_between():
    with pytest.raises(ValueError, match="value_to"):
        compile_condition(
            Condition(field="amount", comparator="greater_than", value="1", value_to="2")
        )


def test_is_empty_takes_no_value():
    with pytest.raises(ValueError, match="takes no value"):
        compile_condition(Condition(field="payee", comparator="is_empty", value="x"))
    assert compile_condition(Condition(field="payee", comparator="is_empty")).text is None


def test_fields_used_includes_grouped_conditions():
    plan = compile_rules(
        [
            _rule(
                "grouped",
                conditions=[],
                groups=[
                    {"conditions": [{"field": "tags", "comparator": "contains", "value": "car"}]},
                    {"conditions": [{"field": "transaction_type", "comparator": "equals", "value": "Expense"}]},
                ],
            ),
        ]
    )
    rule = next(iter(plan))
    assert plan.fields_used[RuleField.TAGS] == ("grouped",)
    assert plan.fields_used[RuleField.TRANSACTION_TYPE] == ("grouped",)
    assert rule.conditions == ()
    assert [c.text for c in rule.all_conditions()] == ["car", "expense"]


def test_blank_text_value_compiles_to_empty_pattern():
    assert compile_condition(Condition(field="payee", comparator="equals", value="   ")).text == ""
    assert compile_condition(Condition(field="notes", comparator="matches", value=" ")).pattern is None
