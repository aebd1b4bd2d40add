"""
Parsing of claude-monitor daily table output.

Turns the box-drawn, ANSI-coloured terminal table into typed usage rows.
"""

import logging
import re
from dataclasses import dataclass
from datetime import date as Date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "…"

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")
TABLE_START_PATTERN = re.compile(r"┏━+┳.*┓")
TOTAL_ROW_PATTERN = re.compile(r"│\s*Total\s*│")
TABLE_ROW_PATTERN = re.compile(
    r"^\s*│" + r"([^│]*)│" * 8 + r"\s*$"
)
HORIZONTAL_RULES = ("━", "─")

_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_INTEGER_PATTERN = re.compile(r"^[+-]?\d+")
_DECIMAL_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)")

# Truncated model names keep their family prefix; map it to a full name.
MODEL_CANONICAL_NAMES = (
    ("claude-sonnet", "claude-sonnet-3.5"),
    ("claude-haiku", "claude-haiku-3"),
    ("claude-opus", "claude-opus-3"),
)


class ParseError(ValueError):
    """Raised when a parsed table row fails validation."""


@dataclass(frozen=True)
class UsageRow:
    """One data row of the daily usage table."""
    date: str
    model_name: str
    input_tokens: int
    output_tokens: int
    cache_create_tokens: int
    cache_read_tokens: int
    total_tokens: int
    cost_usd: Decimal

    def __post_init__(self):
        """Validate the row shape."""
        if not _DATE_PATTERN.match(self.date):
            raise ParseError(f"date must be YYYY-MM-DD, got {self.date!r}")
        try:
            Date.fromisoformat(self.date)
        except ValueError:
            raise ParseError(f"date is not a calendar day: {self.date!r}")
        if not self.model_name:
            raise ParseError("model_name cannot be empty")
        for field_name in (
            "input_tokens", "output_tokens", "cache_create_tokens",
            "cache_read_tokens", "total_tokens"
        ):
            if getattr(self, field_name) < 0:
                raise ParseError(f"{field_name} must be >= 0")
        if self.cost_usd < 0:
            raise ParseError("cost_usd must be >= 0")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI colour and style escape sequences."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


def parse_date(cell: str, today: Optional[Date] = None) -> str:
    """Parse a date cell, falling back to today when it was truncated."""
    if TRUNCATION_MARKER in cell:
        return (today or Date.today()).isoformat()
    return cell.strip()


def parse_model_name(cell: str) -> str:
    """Parse a model cell, restoring known names cut off by the renderer.

    Only truncated names are canonicalized; complete names pass through
    unchanged.
    """
    if TRUNCATION_MARKER in cell:
        for prefix, canonical in MODEL_CANONICAL_NAMES:
            if prefix in cell:
                return canonical
    return cell.replace(TRUNCATION_MARKER, "").strip()


def parse_int(cell: str) -> int:
    """Parse an integer cell like '1,234' or '12,3…'; non-numeric gives 0."""
    clean = re.sub(r"[,…]", "", cell).strip()
    match = _INTEGER_PATTERN.match(clean)
    return int(match.group(0)) if match else 0


def parse_cost(cell: str) -> Decimal:
    """Parse a cost cell like '$3.10' or '$12.…'; non-numeric gives 0."""
    clean = re.sub(r"[$,…]", "", cell).strip()
    match = _DECIMAL_PATTERN.match(clean)
    if not match:
        return Decimal("0")
    try:
        return Decimal(match.group(0))
    except InvalidOperation:
        return Decimal("0")


def parse_table_row(line: str, today: Optional[Date] = None) -> Optional[UsageRow]:
    """Parse one table line into a UsageRow.

    Returns:
        The row, or None if the line is not an 8-cell data row

    Raises:
        ParseError: If the cells parse but the row fails validation
    """
    match = TABLE_ROW_PATTERN.match(line)
    if not match:
        return None

    date_cell, model_cell, *number_cells, cost_cell = match.groups()
    inputs, outputs, cache_create, cache_read, total = (
        parse_int(cell) for cell in number_cells
    )
    return UsageRow(
        date=parse_date(date_cell, today),
        model_name=parse_model_name(model_cell),
        input_tokens=inputs,
        output_tokens=outputs,
        cache_create_tokens=cache_create,
        cache_read_tokens=cache_read,
        total_tokens=total,
        cost_usd=parse_cost(cost_cell),
    )


def parse_table_output(text: str, today: Optional[Date] = None) -> List[UsageRow]:
    """Parse raw claude-monitor output into usage rows.

    Lines before the table's top border are ignored, parsing stops at the
    totals row, and malformed or invalid rows are dropped without aborting
    the batch.

    Args:
        text: Raw terminal output, possibly containing ANSI escapes
        today: Substitute for truncated dates, defaults to the current day

    Returns:
        Rows in the order they appear in the output
    """
    rows = []
    in_table = False

    for line in strip_ansi_codes(text).splitlines():
        if TABLE_START_PATTERN.search(line):
            in_table = True
            continue

        if not in_table:
            continue

        if TOTAL_ROW_PATTERN.search(line):
            break

        if "│" not in line or any(rule in line for rule in HORIZONTAL_RULES):
            continue

        try:
            row = parse_table_row(line, today)
        except ParseError as e:
            logger.warning("Invalid row data, skipping: %r (%s)", line.strip(), e)
            continue

        if row is not None:
            rows.append(row)

    logger.debug("Parsed %d usage rows", len(rows))
    return rows
