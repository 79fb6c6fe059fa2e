"""Query safety policy: identifier validation, write detection and injection guard."""

import re
from dataclasses import dataclass
from typing import Optional, Sequence

SAFE_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*\Z")

WRITE_OPERATION_PATTERN = re.compile(
    r"^\s*(INSERT|UPDATE|DELETE|TRUNCATE|DROP|ALTER|CREATE|MERGE)\b",
    re.IGNORECASE,
)

# String literals (with '' escapes, optional N prefix) and bracketed identifiers
_LITERAL_PATTERN = re.compile(r"N?'(?:[^']|'')*'|\[(?:[^\]]|\]\])*\]", re.IGNORECASE)


def is_safe_identifier(name: str) -> bool:
    """
    Check that a name is a plain unquoted SQL identifier.

    A letter or underscore followed by letters, digits or underscores.
    """
    return bool(SAFE_IDENTIFIER_PATTERN.match(name))


def is_write_operation(query: str) -> bool:
    """
    Check whether a query starts with a write keyword.

    This is a prefix check, not a parser: a SELECT that writes through a
    function call is not detected.
    """
    return bool(WRITE_OPERATION_PATTERN.match(query))


def quote_identifier(name: str) -> str:
    """Bracket-quote a T-SQL identifier."""
    return "[" + name.replace("]", "]]") + "]"


def invalid_identifier_message(field: str, value: str) -> str:
    """Validation message for a rejected identifier."""
    return (
        f"Invalid {field}: '{value}'. "
        "Only alphanumeric characters and underscores are allowed."
    )


def mask_literals(query: str) -> str:
    """
    Blank out string literals and bracketed identifiers.

    Keeps their delimiters so the statement shape is preserved while their
    contents can neither trigger nor hide a rule.
    """

    def _blank(match: re.Match) -> str:
        token = match.group(0)
        if token.startswith("["):
            return "[]"
        return "''"

    return _LITERAL_PATTERN.sub(_blank, query)


@dataclass(frozen=True)
class InjectionRule:
    """A pattern that marks a query as a likely injection attempt."""

    name: str
    pattern: re.Pattern
    reason: str

    def matches(self, masked_query: str) -> bool:
        return bool(self.pattern.search(masked_query))


DEFAULT_INJECTION_RULES: tuple[InjectionRule, ...] = (
    InjectionRule(
        name="stacked_statements",
        pattern=re.compile(r";\s*\S"),
        reason="Multiple statements separated by ';' are not allowed",
    ),
    InjectionRule(
        name="inline_comment",
        pattern=re.compile(r"--|/\*"),
        reason="SQL comments ('--' or '/*') are not allowed",
    ),
    InjectionRule(
        name="dynamic_sql",
        pattern=re.compile(
            r"\bEXEC(?:UTE)?\s*(?:\(|N?''|@)|\bsp_executesql\b", re.IGNORECASE
        ),
        reason="Execution of dynamically constructed SQL is not allowed",
    ),
    InjectionRule(
        name="external_execution",
        pattern=re.compile(
            r"\b(?:xp_cmdshell|OPENROWSET|OPENDATASOURCE)\b", re.IGNORECASE
        ),
        reason="Shell commands and ad-hoc remote data sources are not allowed",
    ),
    InjectionRule(
        name="time_delay",
        pattern=re.compile(r"\bWAITFOR\s+(?:DELAY|TIME)\b", re.IGNORECASE),
        reason="WAITFOR delays are not allowed",
    ),
)


class InjectionGuard:
    """Heuristic injection check applied to every ad-hoc query.

    Defense in depth only; stored procedure parameters are always bound.
    """

    def __init__(self, rules: Sequence[InjectionRule] = DEFAULT_INJECTION_RULES):
        self.rules = tuple(rules)

    def validate(self, query: str) -> tuple[bool, Optional[str]]:
        """
        Check a query against the configured rules.

        Args:
            query: SQL text supplied by the caller

        Returns:
            Tuple of (is_valid, reason); reason is None when valid
        """
        if not query or not query.strip():
            return (False, "Query is empty")

        masked = mask_literals(query)
        for rule in self.rules:
            if rule.matches(masked):
                return (False, rule.reason)

        return (True, None)
