"""Property scenarios, their required document checklists and the classification vocabulary."""

from __future__ import annotations

from typing import Final, Iterable

UNKNOWN_SCENARIO: Final[str] = "UNKNOWN"
OTHER_DOCUMENT_TYPE: Final[str] = "Other"

SCENARIOS: Final[dict[str, dict[str, str]]] = {
    "CLEAR_FREEHOLD_PLOT": {
        "name": "Clear Freehold Plot",
        "description": "A standard, clear title property with no major complications.",
    },
    "FLAT_IN_SOCIETY": {
        "name": "Flat in a Society",
        "description": "An apartment within a registered housing society.",
    },
    "AGRICULTURAL_LAND": {
        "name": "Agricultural Land",
        "description": "Land designated for agricultural use, potentially requiring NA conversion.",
    },
    "NA_PLOT": {
        "name": "NA Plot",
        "description": "Non-agricultural land, typically with a Collector Order.",
    },
    "MORTGAGED_PROPERTY": {
        "name": "Mortgaged Property",
        "description": "The property currently has an active loan or mortgage against it.",
    },
    "COURT_CASE_LITIGATION": {
        "name": "Court Case / Litigation",
        "description": "The property is involved in an ongoing legal dispute.",
    },
    "UNDER_CONSTRUCTION": {
        "name": "Under Construction",
        "description": "The property is being developed by a builder and is not yet complete.",
    },
    "INDUSTRIAL_PLOT": {
        "name": "Industrial Plot",
        "description": "A plot designated for industrial use, often with lease terms (e.g., MIDC).",
    },
    "INHERITED_PROPERTY": {
        "name": "Inherited Property",
        "description": "Property acquired through succession or inheritance.",
    },
    "JOINT_OWNERSHIP": {
        "name": "Joint Ownership",
        "description": "Property owned by multiple co-owners.",
    },
    "REDEVELOPMENT_PROPERTY": {
        "name": "Redevelopment Property",
        "description": "An old society/building being redeveloped by a builder.",
    },
    UNKNOWN_SCENARIO: {
        "name": "Unknown",
        "description": "The scenario could not be determined from the provided documents.",
    },
}

SCENARIO_REQUIRED_DOCUMENTS: Final[dict[str, tuple[str, ...]]] = {
    "CLEAR_FREEHOLD_PLOT": (
        "Sale Deed",
        "Mutation Entry",
        "7/12 Extract or Property Card",
        "Encumbrance Certificate (30 years)",
        "Property Tax Receipt",
    ),
    "FLAT_IN_SOCIETY": (
        "Sale Deed",
        "Society Share Certificate",
        "Society NOC for sale/mortgage",
        "Building Plan Approval",
        "Occupancy Certificate",
        "Latest Maintenance Bill",
        "Encumbrance Certificate",
    ),
    "AGRICULTURAL_LAND": (
        "7/12 Extract",
        "Mutation Entry",
        "Sale Deed",
        "Encumbrance Certificate",
        "Farmer Certificate",
    ),
    "NA_PLOT": (
        "NA Order",
        "Sale Deed",
        "Mutation Entry",
        "Approved Layout Plan",
        "Property Tax Receipt",
        "Encumbrance Certificate",
    ),
    "MORTGAGED_PROPERTY": (
        "Original Sale Deed",
        "Mortgage Deed / MODT",
        "Deed of Release / Bank NOC",
        "Latest Loan Statement",
        "Encumbrance Certificate",
        "CERSAI Report",
    ),
    "COURT_CASE_LITIGATION": (
        "Sale Deed",
        "Plaint/Petition Copies",
        "Court Orders/Stay Orders",
        "Encumbrance Certificate showing Lis Pendens",
    ),
    "UNDER_CONSTRUCTION": (
        "Agreement for Sale",
        "Builder Title Documents (for land)",
        "RERA Registration Certificate",
        "Approved Plans",
        "Commencement Certificate",
        "NA Order for land",
    ),
    "INDUSTRIAL_PLOT": (
        "Lease Deed",
        "MIDC/GIDC Allotment Letter",
        "Possession Receipt",
        "No Dues Certificate from Authority",
        "Approval for Transfer",
    ),
    "INHERITED_PROPERTY": (
        "Parent Document (e.g., Sale Deed)",
        "Death Certificate of previous owner",
        "Will / Probate or Succession Certificate",
        "Legal Heir Certificate",
        "Mutation Entry in heirs' names",
    ),
    "JOINT_OWNERSHIP": (
        "Sale Deed",
        "Partition Deed (if any)",
        "Agreement between owners",
        "Encumbrance Certificate",
    ),
    "REDEVELOPMENT_PROPERTY": (
        "Original Ownership Deeds",
        "Registered Redevelopment Agreement",
        "Members' Consent Letters",
        "Sanctioned Redevelopment Plans",
        "RERA Registration Details",
    ),
    UNKNOWN_SCENARIO: (
        "Sale Deed",
        "Mutation Entry",
        "Property Tax Receipt",
        "Encumbrance Certificate",
    ),
}

DOCUMENT_TYPES: Final[tuple[str, ...]] = (
    "Sale Deed",
    "Mutation Entry",
    "Loan Agreement",
    "Property Tax Receipt",
    "Power of Attorney",
    "Title Search Report",
    "Encumbrance Certificate",
    "Building Plan Approval",
    "Society Share Certificate",
    "Society NOC",
    "NA Order",
    "7/12 Extract",
    "Lease Deed",
    "Agreement for Sale",
    "Will / Probate",
    "Partition Deed",
    "Occupancy Certificate",
    "RERA Registration Certificate",
    "Redevelopment Agreement",
    "Legal Heir Certificate",
    "CERSAI Report",
    "Commencement Certificate",
    "Layout Plan",
    OTHER_DOCUMENT_TYPE,
)

_DOCUMENT_TYPES_BY_KEY: Final[dict[str, str]] = {label.lower(): label for label in DOCUMENT_TYPES}


def is_known_scenario(value: object) -> bool:
    return isinstance(value, str) and value in SCENARIOS


def normalize_scenario(value: object) -> str:
    """Return ``value`` when it names a scenario, otherwise ``UNKNOWN``."""

    if isinstance(value, str):
        candidate = value.strip().upper()
        if candidate in SCENARIOS:
            return candidate
    return UNKNOWN_SCENARIO


def required_documents(scenario: str | None) -> list[str]:
    """Return the required document checklist for ``scenario`` (``UNKNOWN`` when unrecognised)."""

    return list(SCENARIO_REQUIRED_DOCUMENTS[normalize_scenario(scenario)])


def match_document_type(label: str | None) -> str:
    """Map a free-form classifier answer onto the closed vocabulary.

    Matching is case-insensitive and tolerant of surrounding quotes or a
    trailing period. Anything outside the vocabulary becomes ``Other``.
    """

    if not label:
        return OTHER_DOCUMENT_TYPE
    cleaned = label.strip().strip("\"'`*").rstrip(".").strip()
    return _DOCUMENT_TYPES_BY_KEY.get(cleaned.lower(), OTHER_DOCUMENT_TYPE)


def missing_documents(uploaded: Iterable[str], required: Iterable[str]) -> list[str]:
    """Return required labels with no case-insensitive match among ``uploaded``.

    Order follows ``required``; duplicates in ``required`` are reported once.
    """

    present = {label.strip().lower() for label in uploaded if label}
    missing: list[str] = []
    seen: set[str] = set()
    for label in required:
        key = label.strip().lower()
        if key in present or key in seen:
            continue
        seen.add(key)
        missing.append(label)
    return missing


__all__ = [
    "DOCUMENT_TYPES",
    "OTHER_DOCUMENT_TYPE",
    "SCENARIOS",
    "SCENARIO_REQUIRED_DOCUMENTS",
    "UNKNOWN_SCENARIO",
    "is_known_scenario",
    "match_document_type",
    "missing_documents",
    "normalize_scenario",
    "required_documents",
]
