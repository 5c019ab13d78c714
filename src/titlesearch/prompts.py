"""Prompt templates, report formats and response schemas for the AI gateway."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from typing import Any, Final

from .scenarios import DOCUMENT_TYPES, SCENARIOS

CLASSIFY_TEXT_LIMIT: Final[int] = 2000
METADATA_TEXT_LIMIT: Final[int] = 30000
REFORMAT_TEXT_LIMIT: Final[int] = 30000

EXTRACTION_PROMPT: Final[str] = (
    "Extract all text content from this document. Preserve formatting like paragraphs "
    "and line breaks where possible. If the document is unreadable or contains no text, "
    "return 'Error: Unable to extract text from the provided file.'"
)

REPORT_SYSTEM_PROMPT: Final[str] = (
    "You are an expert legal AI assistant. Generate the report and associated metadata in "
    "JSON format. The 'content' field must contain the full report in Markdown with tables. "
    "OUTPUT MUST BE IN ENGLISH. TRANSLATE ANY MARATHI TEXT."
)

REFORMAT_SYSTEM_PROMPT: Final[str] = (
    "You are an expert legal AI assistant. Your task is to reformat the provided legal report "
    "content into the requested format while preserving all factual details. Output MUST be in "
    "Markdown with Tables and in ENGLISH."
)

GOVERNING_RULES: Final[str] = """
STRICT GOVERNING RULES (MANDATORY):

1. DOCUMENT HIERARCHY
   Priority order, highest first:
   a) Loan Application / Title Search Request / Lender Instruction
   b) Sale Deed / Conveyance Deed / Transfer Deeds
   c) Revenue & Municipal Records
   d) Encumbrance / Court / CERSAI Records
   e) Identity Documents
   Resolve conflicts in favour of the higher-priority document and record every conflict explicitly.

2. APPLICANT IDENTIFICATION
   Take applicant name(s) only from the Loan Application / Search Request. Never add, remove,
   substitute or correct applicant names.

3. TARGET PROPERTY CONTROL
   Reproduce the target property description exactly as stated in the Loan Application and
   record any discrepancy found in other documents.

4. STR TYPE DETERMINATION
   Determine the STR type (Purchase / Mortgage / LAP / Balance Transfer / Builder Loan) only from
   the Loan Application. If it is not stated, say so.

5. SEARCH PERIOD
   Use the search period stated in the Loan Application or lender instruction. Never assume a default.

6. CHAIN OF TITLE
   Build the chain of title strictly from the documents provided. Record missing or unclear links as gaps.

7. ENCUMBRANCES
   List encumbrances exactly as found. Do not infer discharge or closure unless documented.

8. LEGAL OPINION SAFETY
   Use conservative, conditional, bank-acceptable language whenever documents are missing,
   discrepancies exist or the search scope is unclear.

9. OUTPUT DISCIPLINE
   Follow the requested STR format without changing its section order or structure.

10. PROHIBITED BEHAVIOR
    No assumptions, inferred facts, silent corrections or optimistic interpretations.
"""

FORMATTING_RULES: Final[str] = """
IMPORTANT FORMATTING AND LANGUAGE RULES:
1. **LANGUAGE**: The final report MUST be in ENGLISH.
2. **TABLES**: Use standard Markdown tables for ALL lists of data, documents, flow of title and property schedules.
3. **FORMAT**: Do not use HTML tables, only Markdown syntax.
"""


@dataclass(slots=True, frozen=True)
class ReportFormat:
    name: str
    title: str
    sections: tuple[str, ...]


REPORT_FORMATS: Final[tuple[ReportFormat, ...]] = (
    ReportFormat(
        name="Advocate Standard Format",
        title="**LEGAL SCRUTINY REPORT (ADVOCATE STANDARD)**",
        sections=(
            "**To:** [Bank Name/Client Name]",
            "**PART I:** table of Name of the Applicant ({client_name}), App ID, Case Type, Name of the proposed Owner",
            "**PART II: SCHEDULE OF PROPERTY:** plot no, area, village, district, with a boundaries table (East/West/South/North)",
            "**PART III: LIST OF DOCUMENTS PERUSED:** table of S. No., Date, Description, Doc. No., Nature (Copy/Original), Parties, Uploaded File Name",
            "**PART IV: FLOW OF TITLE:** chronological narrative",
            "**PART V: ENCUMBRANCE:** search findings",
            "**PART VI: OTHER PROVISIONS:** Yes/No answers on 30-year scrutiny, NA conversion, mortgage by deposit of title deeds, SARFAESI, tax paid, minor's claim, joint family property, ULC, tenancy, reservations, POA, tribal land, lease",
            "**PART VII: OTHER REMARKS:**",
            "**PART VIII: CERTIFICATE:** title and mortgageability certificate",
            "**PART IX: LIST OF DOCUMENTS TO BE COLLECTED:**",
        ),
    ),
    ReportFormat(
        name="Bajaj Finance Format",
        title="**TITLE SEARCH REPORT (BAJAJ HOUSING FINANCE LTD)**",
        sections=(
            "**To,** The Credit Manager, Bajaj Housing Finance Ltd. **Sub:** Legal Report",
            "1] Nature of Transaction, 2] Name of the Borrower ({client_name}), 3] Name of the Owner, 4] Payment to be made in",
            "**5] Description of the Property/Properties:** table with location and boundaries",
            "7] Nature of Property (Free Hold/Leasehold/NA Land)",
            "**8] Document Given for Inspection:** table",
            "**9] Documents Examined but not physically received from customer:** table",
            "10] General Information, 11] Legal issues affecting title, 12] Steps prior to disbursement",
            "**13] Opinion:** including enforceability under the SARFAESI Act",
            "14] Documents required for creation of security, 15] Documents required post disbursal",
            "**Summary Table:** Yes/No on clear and marketable title, mortgage creation, minor's rights, ULC, wakf/church/temple rights, stamp duty, leasehold construction, SARFAESI",
        ),
    ),
    ReportFormat(
        name="JM Financial Format",
        title="**Investigation Report & Title Certificate (JMFHLL)**",
        sections=(
            "**To,** JMFHLL JM Financial Home Loans Limited, with a table of Date ({report_date}), Status of Legal Opinion (POSITIVE/NEGATIVE/QUERY), Transaction Type",
            "1. Borrower(s) ({client_name}), 2. Owner(s), 3. Constitution of the Owner",
            "4. Full description of the property with boundaries",
            "5. Title deeds / documents scrutinized",
            "6. Tracing of title for at least 13 years",
            "7-11. Prohibited property list, additional documents, tax receipts, encumbrance certificate and online EC verification, charges found",
            "12-17. Leasehold/freehold, Society/Authority NOC, minor's interest, land type, applicable Acts, latest mutation",
            "18. Original title documents required for mortgaging, 19. Form of Mortgage",
            "**Vetting Report for original documents**, **List of original documents verified**, **List of PDD**",
        ),
    ),
    ReportFormat(
        name="Mahindra Rural Format",
        title="**Title Scrutiny Report (Mahindra Rural Housing Finance)**",
        sections=(
            "**Ref No:**, **Status:** (Positive/Negative), **To:** Mahindra Rural Housing Finance Limited",
            "**I. NAME & ADDRESS OF BORROWER:** ({client_name}) and owner",
            "**II. DESCRIPTION OF THE PROPERTY:** with boundaries",
            "**III. LIST OF DOCUMENTS SCRUTINIZED:**",
            "**IV. FLOW OF TITLE SINCE INCEPTION:** oldest to latest",
            "**V. ENCUMBRANCE CERTIFICATE:**",
            "**VI. Key Observations:**",
            "**VII. MODE AND MANNER OF CREATING MORTGAGE:**",
            "**VIII. DOCUMENTS TO BE COLLECTED:** prior to disbursement, OTC, post disbursement",
            "**IX. FINAL CERTIFICATE:**",
        ),
    ),
    ReportFormat(
        name="HDFC Format",
        title="**HDFC BANK TITLE SEARCH REPORT (TSR)**",
        sections=(
            "**1. Property Details:** address ({property_address}), city/village, taluka/district, survey/gat no., area",
            "**2. Owners Details:** current owner(s), mode of acquisition, date of document",
            "**3. Documents Verified:**",
            "**4. Title Flow Summary (Last 30 Years):**",
            "**5. Encumbrance Certificate Findings:** period checked and findings",
            "**6. Legal Observations:**",
            "**7. Opinion on Title:** Clear and Marketable / Not Clear",
            "**8. Requirements / Conditions for HDFC Loan:**",
            "**9. Documents Required Before Disbursement:**",
            "**10. Advocate Certification:**",
        ),
    ),
    ReportFormat(
        name="LSR Format",
        title="**LEGAL SCRUTINY REPORT**",
        sections=(
            "**LAN No:**, **Date:** {report_date}, **To:** Bank/Client Name",
            "**PART I: PROPERTY DETAILS:** applicant ({client_name}), co-applicants, loan type and purpose, owners, description with boundaries, nature and type of property",
            "**PART II: LIST OF DOCUMENTS SUBMITTED:** with Original/Xerox status",
            "**PART III: FLOW OF TITLE OF PROPERTY:**",
            "**PART IV: EVIDENCE OF THE TITLE OF PROPERTY:**",
            "**PART V: OTHER PROVISIONS:** Yes/No answers 5.1 to 5.21 covering ULC, minor's claim, tenancy, NA conversion, tax, scrutiny period, mortgage, tenure, tribal land, joint family, SARFAESI, reservations, POA, permissions, search report and EC",
            "**PART VI: CERTIFICATE:**",
        ),
    ),
)

DEFAULT_REPORT_FORMAT: Final[str] = REPORT_FORMATS[0].name

_FALLBACK_FORMAT = ReportFormat(
    name="Generic",
    title="**LEGAL SCRUTINY REPORT**",
    sections=(
        "1. **Property Details**: owner, address, survey no., area",
        "2. **List of Documents**: table of submitted documents",
        "3. **Flow of Title**: history of ownership",
        "4. **Search Report**: search details and observations",
        "5. **Opinion**: final legal opinion",
    ),
)


def report_format_names() -> list[str]:
    return [item.name for item in REPORT_FORMATS]


def get_report_format(name: str | None) -> ReportFormat:
    for item in REPORT_FORMATS:
        if item.name == name:
            return item
    return _FALLBACK_FORMAT


def classification_prompt(text: str) -> str:
    labels = ", ".join(DOCUMENT_TYPES)
    return (
        "Based on the following text from a legal property document, classify the document type.\n\n"
        f"Return ONLY one of the following classifications: {labels}.\n\n"
        'If you cannot determine the type, return "Other".\n\n'
        "---\n"
        f'TEXT: "{text[:CLASSIFY_TEXT_LIMIT]}..."\n'
        "---\n\n"
        "DOCUMENT TYPE:"
    )


def metadata_prompt(text: str) -> str:
    scenario_lines = "\n".join(
        f"- {key}: {value['description']}" for key, value in SCENARIOS.items()
    )
    return f"""From the provided text, which contains content from one or more legal documents, extract key details and identify the primary legal scenario. The text from different documents is separated by "--- Document: [filename] ---".

SCENARIO IDENTIFICATION:
Pick the most fitting scenario from the list below, preferring the most specific one when several apply.

Available Scenarios:
{scenario_lines}

If no specific scenario can be determined, use 'UNKNOWN'.

DATA EXTRACTION:
Also extract the property address, the primary client/borrower's name, and the title search period.
Generate a concise project name based on the address and client.
**IMPORTANT: Ensure all extracted values (Project Name, Address, Client Name) are translated/transliterated to ENGLISH.**

DOCUMENT TEXT:
---
{text[:METADATA_TEXT_LIMIT]}
---
"""


METADATA_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "projectName": {
            "type": "string",
            "description": "A short, descriptive project name, like 'Property Search for [Client Name] at [Address]'. IN ENGLISH.",
        },
        "propertyAddress": {
            "type": "string",
            "description": "The full property address mentioned in the document. IN ENGLISH.",
        },
        "clientName": {
            "type": "string",
            "description": "The name of the main client, borrower, or property owner. IN ENGLISH.",
        },
        "searchPeriod": {
            "type": "string",
            "description": "The title search period (e.g., '30 years'), or 'Not Specified'.",
        },
        "scenario": {
            "type": "string",
            "description": "The identified legal scenario for the property.",
            "enum": list(SCENARIOS),
        },
    },
}

REPORT_SCHEMA: Final[dict[str, Any]] = {
    "type": "object",
    "properties": {
        "content": {
            "type": "string",
            "description": "The full report in Markdown format, containing Markdown tables for structured data. ALL TEXT MUST BE IN ENGLISH.",
        },
        "summary": {"type": "string", "description": "Executive summary of the title status."},
        "strCategory": {"type": "string", "description": "Category: Clear, Moderate Risk, or High Risk."},
        "riskFlags": {
            "type": "array",
            "items": {"type": "string"},
            "description": "List of compliance red flags.",
        },
    },
    "required": ["content", "summary", "strCategory", "riskFlags"],
}


def report_prompt(
    *,
    client_name: str,
    property_address: str,
    search_period: str,
    report_format: str,
    context: str,
    advocate_instructions: str | None = None,
    today: date | None = None,
) -> str:
    """Build the report-generation prompt for ``report_format`` over the aggregated document text."""

    report_date = (today or date.today()).strftime("%d/%m/%Y")
    fmt = get_report_format(report_format)
    placeholders = {
        "client_name": client_name or "N/A",
        "property_address": property_address or "N/A",
        "report_date": report_date,
    }
    structure = "\n".join(f"      {line.format(**placeholders)}" for line in fmt.sections)
    return f"""
SYSTEM INSTRUCTION:
You are an expert legal AI assistant. Your task is to generate a professional Title Search Report based on the provided document context, STRICTLY following the requested format structure.

{GOVERNING_RULES}

**LOAN APPLICATION / SEARCH REQUEST DETAILS (HIGHEST AUTHORITY):**
- **Client/Applicant Name**: {client_name or 'N/A'}
- **Target Property Description**: {property_address or 'N/A'}
- **Search Period**: {search_period or 'Not Specified'}
- **Date**: {report_date}
- **Advocate Instructions**: {advocate_instructions or 'None'}

**REQUIRED FORMAT: {report_format}**
{FORMATTING_RULES}

{fmt.title}
      **STRUCTURE:**
{structure}

**DOCUMENT CONTEXT:**
{context}

**OUTPUT:**
Generate the full report in valid Markdown. Ensure all tables are correctly formatted. **ENSURE ALL OUTPUT IS IN ENGLISH.**
"""


def reformat_prompt(
    content: str,
    target_format: str,
    advocate_instructions: str | None = None,
    *,
    today: date | None = None,
) -> str:
    format_instructions = report_prompt(
        client_name="",
        property_address="",
        search_period="",
        report_format=target_format,
        context="",
        advocate_instructions=advocate_instructions,
        today=today,
    )
    return f"""
SYSTEM INSTRUCTION:
You are an expert legal AI assistant. Your task is to take the provided "EXISTING REPORT CONTENT" and meticulously re-structure it to fit the "TARGET REPORT FORMAT".

**CRITICAL INSTRUCTION: The final report MUST be in ENGLISH. If the input content contains non-English text (e.g. Marathi), TRANSLATE it to professional legal English.**

TARGET REPORT FORMAT INSTRUCTIONS:
{format_instructions}

EXISTING REPORT CONTENT:
---
{content[:REFORMAT_TEXT_LIMIT]}
---

Generate the reformatted report content in Markdown following the TARGET REPORT FORMAT.
Ensure all lists and structured data (like list of documents, history) are converted into Markdown Tables.
"""


__all__ = [
    "CLASSIFY_TEXT_LIMIT",
    "DEFAULT_REPORT_FORMAT",
    "EXTRACTION_PROMPT",
    "METADATA_SCHEMA",
    "METADATA_TEXT_LIMIT",
    "REPORT_FORMATS",
    "REPORT_SCHEMA",
    "ReportFormat",
    "classification_prompt",
    "get_report_format",
    "metadata_prompt",
    "report_format_names",
    "report_prompt",
    "reformat_prompt",
]
