from __future__ import annotations

from parley.core.planning.variables import VariableReference, find_references, has_unresolved, replace_spans


def test_find_references_reports_names_and_spans() -> None:
    value = "Compare $FIRST_RESULT with $second-result and $PLAN.RESULT."

    references = find_references(value)

    assert [reference.name for reference in references] == ["FIRST_RESULT", "second-result", "PLAN.RESULT"]
    first = references[0]
    assert value[first.start : first.end] == "$FIRST_RESULT"


def test_placeholders_and_prices_are_not_references() -> None:
    assert find_references("needs $??? from the user") == []
    assert find_references("costs $5 total") == []


def test_replace_spans_keeps_surrounding_text() -> None:
    value = "$A then $B"
    references = find_references(value)

    rewritten = replace_spans(value, [(references[1], "$???"), (references[0], "$PLAN.RESULT")])

    assert rewritten == "$PLAN.RESULT then $???"
    assert has_unresolved(rewritten)


def test_replace_spans_without_replacements_is_identity() -> None:
    assert replace_spans("plain", []) == "plain"
    assert VariableReference("X", 0, 2) == VariableReference("X", 0, 2)
