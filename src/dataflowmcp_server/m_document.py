"""
Validation and parsing of M (Power Query) section documents.

A section document looks like::

    section Section1;

    [Staging = "DefaultModelStorage"]
    shared Customers = let
        Source = Lakehouse.Contents(null),
        Result = Source{[Id = "dbo"]}[Data]
    in
        Result;

    shared #"Customer Count" = Table.RowCount(Customers);

The validator only performs structural checks; it never evaluates M.
"""

import logging
import re
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SECTION_KEYWORD = re.compile(r"\bsection\s")
SECTION_DECLARATION = re.compile(r"\bsection\s+\w+\s*;")
SHARED_DECLARATION = re.compile(r'\bshared\s+(#"(?:[^"]|"")+"|\w+)\s*=\s*', re.IGNORECASE)
LET_KEYWORD = re.compile(r"\blet\b", re.IGNORECASE)
IN_KEYWORD = re.compile(r"\bin\b", re.IGNORECASE)

BRACKET_PAIRS = (
    ("(", ")", "parentheses"),
    ("{", "}", "braces"),
    ("[", "]", "square brackets"),
)

GEN2_STAGING_MARKER = "[StagingDefinition"
GEN2_FASTCOPY_MARKER = "FastCopy"
DESTINATION_CALLS = ("Lakehouse.Contents", "Warehouse.Contents")

PLAIN_IDENTIFIER = re.compile(r"[A-Za-z_]\w*")
M_KEYWORDS = frozenset({
    "and", "as", "each", "else", "error", "false", "if", "in", "is", "let", "meta",
    "not", "null", "or", "otherwise", "section", "shared", "then", "true", "try", "type",
})

TABLE_NAME_PATTERNS = (
    re.compile(r"""(?:to|into|save to|load to|write to)\s+['"]?(\w+)['"]?""", re.IGNORECASE),
    re.compile(r"(\w+)\s+table", re.IGNORECASE),
    re.compile(r"""table\s+['"]?(\w+)['"]?""", re.IGNORECASE),
)

# =============================================================================
#  RESULT MODELS
# =============================================================================

class ValidationResult(BaseModel):
    """Outcome of validating one M section document."""
    is_valid: bool = Field(..., alias="isValid")
    is_gen2_pattern: bool = Field(False, alias="isGen2Pattern")
    errors: Tuple[str, ...] = ()
    warnings: Tuple[str, ...] = ()
    suggestions: Tuple[str, ...] = ()
    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def detected_pattern(self) -> str:
        return "Gen2 FastCopy" if self.is_gen2_pattern else "Gen1 Pipeline"


class ParsedQuery(BaseModel):
    """A single `shared` query extracted from a section document."""
    name: str
    code: str
    attribute: str = ""
    model_config = {"frozen": True}

# =============================================================================
#  VALIDATION
# =============================================================================

def check_bracket_balance(document: str, open_char: str, close_char: str, name: str) -> Optional[str]:
    """
    Compares the global counts of one delimiter pair.

    This is a count check, not a stack matcher: ``([)]`` is reported as balanced.
    Returns an error message when the counts differ, otherwise None.
    """
    open_count = document.count(open_char)
    close_count = document.count(close_char)
    if open_count != close_count:
        return f"Unbalanced {name}: {open_count} opening, {close_count} closing"
    return None


def _has_destination(document: str) -> bool:
    return any(call in document for call in DESTINATION_CALLS)


def _gen2_rules(document: str, warnings: List[str], suggestions: List[str]) -> None:
    if "[DataDestinations" not in document:
        warnings.append("Gen2 FastCopy pattern detected but no [DataDestinations] attribute found on source query")
    if "_DataDestination" not in document:
        suggestions.append("Gen2 pattern typically uses '{QueryName}_DataDestination' naming convention for destination queries")
    if "HierarchicalNavigation" not in document:
        suggestions.append(
            "Gen2 Lakehouse destination should use: Lakehouse.Contents([HierarchicalNavigation = null, "
            "CreateNavigationProperties = false, EnableFolding = false])"
        )


def _gen1_rules(document: str, suggestions: List[str]) -> None:
    has_destinations = "[DataDestinations" in document
    if "DefaultModelStorage" not in document and not has_destinations:
        suggestions.append(
            "Consider using Gen2 FastCopy pattern with [StagingDefinition = [Kind = \"FastCopy\"]] "
            "or add 'DefaultModelStorage' query for Gen1 write operations"
        )
    if "Pipeline.ExecuteAction" not in document and not has_destinations:
        suggestions.append(
            "For Gen1: Add a write query using 'Pipeline.ExecuteAction'. "
            "For Gen2: Add [DataDestinations] attribute to source query"
        )
    if "[Staging" not in document:
        suggestions.append(
            "For Gen1: Write queries should have [Staging = \"DefaultModelStorage\"] attribute. "
            "For Gen2: Use [StagingDefinition = [Kind = \"FastCopy\"]] at section level"
        )


def validate_m_document(document: str) -> ValidationResult:
    """
    Validates the structure of an M section document.

    Errors block saving; warnings and suggestions are advisory only. The Gen1/Gen2
    classification never affects `is_valid`.
    """
    errors: List[str] = []
    warnings: List[str] = []
    suggestions: List[str] = []

    trimmed = document.strip()
    is_gen2 = GEN2_STAGING_MARKER in trimmed and GEN2_FASTCOPY_MARKER in trimmed

    if not SECTION_KEYWORD.search(trimmed):
        errors.append("Document must contain a section declaration (e.g., 'section Section1;')")
    elif not SECTION_DECLARATION.search(trimmed):
        errors.append("Section declaration must end with semicolon (e.g., 'section Section1;')")

    if not SHARED_DECLARATION.search(document):
        errors.append("Document must contain at least one 'shared' query declaration")

    for open_char, close_char, name in BRACKET_PAIRS:
        error = check_bracket_balance(document, open_char, close_char, name)
        if error:
            errors.append(error)

    let_count = len(LET_KEYWORD.findall(document))
    in_count = len(IN_KEYWORD.findall(document))
    if let_count != in_count:
        warnings.append(
            f"Mismatched let/in keywords: {let_count} 'let', {in_count} 'in'. "
            "This may be intentional for simple expressions."
        )

    if is_gen2:
        _gen2_rules(document, warnings, suggestions)
    elif _has_destination(document):
        _gen1_rules(document, suggestions)

    result = ValidationResult(
        is_valid=not errors,
        is_gen2_pattern=is_gen2,
        errors=tuple(errors),
        warnings=tuple(warnings),
        suggestions=tuple(suggestions),
    )
    logger.debug(f"Validated M document: {len(errors)} errors, {len(warnings)} warnings, {len(suggestions)} suggestions.")
    return result

# =============================================================================
#  PARSING
# =============================================================================

def _attribute_start(document: str, shared_start: int) -> Optional[int]:
    """
    Returns the index of the `[` opening the attribute block that immediately
    precedes a `shared` keyword, or None when there is no such block.
    Nested records inside the attribute are balanced.
    """
    pos = shared_start - 1
    while pos >= 0 and document[pos].isspace():
        pos -= 1
    if pos < 0 or document[pos] != "]":
        return None

    depth = 0
    while pos >= 0:
        char = document[pos]
        if char == "]":
            depth += 1
        elif char == "[":
            depth -= 1
            if depth == 0:
                return pos
        pos -= 1
    return None


def _unwrap_name(raw_name: str) -> str:
    if raw_name.startswith('#"') and raw_name.endswith('"'):
        return raw_name[2:-1].replace('""', '"')
    return raw_name


def parse_m_queries(document: str) -> List[ParsedQuery]:
    """
    Splits a section document into its `shared` queries, in document order.

    Each body runs from its `=` to the LAST semicolon before the next declaration
    (including that declaration's attribute block), so semicolons inside `let`
    blocks never truncate a query. The final query runs to the end of the document.
    Duplicate names are returned as found.
    """
    declarations = []
    for match in SHARED_DECLARATION.finditer(document):
        attr_start = _attribute_start(document, match.start())
        start = match.start() if attr_start is None else attr_start
        attribute = "" if attr_start is None else document[attr_start:match.start()].strip()
        declarations.append((start, match.end(), _unwrap_name(match.group(1)), attribute))

    queries: List[ParsedQuery] = []
    for index, (_, body_start, name, attribute) in enumerate(declarations):
        if index + 1 < len(declarations):
            next_start = declarations[index + 1][0]
            last_semicolon = document.rfind(";", body_start, next_start)
            body_end = last_semicolon + 1 if last_semicolon >= 0 else next_start
        else:
            body_end = len(document)

        code = document[body_start:body_end].strip()
        if code.endswith(";"):
            code = code[:-1].strip()

        queries.append(ParsedQuery(name=name, code=code, attribute=attribute))

    logger.debug(f"Parsed {len(queries)} shared queries from M document.")
    return queries


def quote_identifier(name: str) -> str:
    """Renders a query name as an M identifier, using #"..." unless it is a plain non-keyword name."""
    if PLAIN_IDENTIFIER.fullmatch(name) and name not in M_KEYWORDS:
        return name
    return '#"{}"'.format(name.replace('"', '""'))


def wrap_for_dataflow_query(query: str, query_name: str) -> str:
    """Wraps a bare M expression in a section document unless it already is one."""
    if not query or not query.strip():
        return query
    if query.strip().lower().startswith("section "):
        return query
    return f"section Section1;\n\nshared {quote_identifier(query_name)} = {query.rstrip()};"


def extract_table_name(text: str) -> Optional[str]:
    """Best-effort extraction of a target table name from a plain-language requirement."""
    for pattern in TABLE_NAME_PATTERNS:
        match = pattern.search(text)
        if match and match.group(1):
            return match.group(1)
    return None
