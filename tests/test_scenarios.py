from __future__ import annotations

import pytest

from titlesearch.scenarios import (
    DOCUMENT_TYPES,
    SCENARIO_REQUIRED_DOCUMENTS,
    SCENARIOS,
    UNKNOWN_SCENARIO,
    match_document_type,
    missing_documents,
    normalize_scenario,
    required_documents,
)


def test_every_scenario_has_a_checklist() -> None:
    assert set(SCENARIOS) == set(SCENARIO_REQUIRED_DOCUMENTS)
    assert len(SCENARIOS) == 12
    assert len(required_documents("FLAT_IN_SOCIETY")) == 7


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("NA_PLOT", "NA_PLOT"),
        (" flat_in_society ", "FLAT_IN_SOCIETY"),
        ("CASTLE", UNKNOWN_SCENARIO),
        ("", UNKNOWN_SCENARIO),
        (None, UNKNOWN_SCENARIO),
        (42, UNKNOWN_SCENARIO),
    ],
)
def test_normalize_scenario(raw, expected) -> None:
    assert normalize_scenario(raw) == expected


def test_required_documents_returns_a_fresh_list() -> None:
    first = required_documents("UNKNOWN")
    first.append("Extra")

    assert required_documents("UNKNOWN") == [
        "Sale Deed",
        "Mutation Entry",
        "Property Tax Receipt",
        "Encumbrance Certificate",
    ]
    assert required_documents("not-a-scenario") == required_documents(UNKNOWN_SCENARIO)


@pytest.mark.parametrize(
    ("answer", "expected"),
    [
        ("Sale Deed", "Sale Deed"),
        ("  sale deed. ", "Sale Deed"),
        ('"7/12 Extract"', "7/12 Extract"),
        ("**Encumbrance Certificate**", "Encumbrance Certificate"),
        ("Birth Certificate", "Other"),
        ("", "Other"),
        (None, "Other"),
    ],
)
def test_match_document_type(answer, expected) -> None:
    assert match_document_type(answer) == expected
    assert match_document_type(answer) in DOCUMENT_TYPES


def test_missing_documents_is_case_insensitive_and_ordered() -> None:
    required = ["Sale Deed", "Mutation Entry", "Sale Deed", "Encumbrance Certificate"]

    assert missing_documents(["SALE DEED", "Other"], required) == ["Mutation Entry", "Encumbrance Certificate"]
    assert missing_documents([], required) == ["Sale Deed", "Mutation Entry", "Encumbrance Certificate"]
    assert missing_documents(required, required) == []
