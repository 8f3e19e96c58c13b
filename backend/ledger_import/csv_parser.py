"""
Delimited-text parsing for bank statement exports.

Handles comma, semicolon and tab separated files with an optional header row
and double-quoted fields. Quoted fields may contain the delimiter but not a
line break; every parsed value is trimmed.
"""

import logging
import re
from typing import List, Optional

from .models import ParseDiagnostic, ParsedTable

logger = logging.getLogger(__name__)

SUPPORTED_DELIMITERS = (",", ";", "\t")

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


def split_lines(content: str) -> List[str]:
    """Split on \\n, \\r\\n or bare \\r and drop trailing blank lines."""
    lines = _LINE_BREAK.split(content)
    while lines and lines[-1].strip() == "":
        lines.pop()
    return lines


def detect_delimiter(content: str) -> str:
    """
    Guess the delimiter from the first line of the content.

    Semicolon wins when it outnumbers commas and is at least as common as
    tabs; tab wins only when it strictly outnumbers both. Comma otherwise.
    """
    lines = _LINE_BREAK.split(content or "", maxsplit=1)
    first_line = lines[0] if lines else ""

    comma_count = first_line.count(",")
    semicolon_count = first_line.count(";")
    tab_count = first_line.count("\t")

    if semicolon_count > comma_count and semicolon_count >= tab_count:
        return ";"
    if tab_count > comma_count and tab_count > semicolon_count:
        return "\t"
    return ","


def parse_line(line: str, delimiter: str) -> List[str]:
    """
    Split one line into fields, honouring double-quoted fields.

    A doubled quote inside a quoted field is a literal quote.
    """
    fields: List[str] = []
    current: List[str] = []
    in_quotes = False
    i = 0
    length = len(line)

    while i < length:
        char = line[i]
        if in_quotes:
            if char == '"':
                if i + 1 < length and line[i + 1] == '"':
                    current.append('"')
                    i += 2
                    continue
                in_quotes = False
            else:
                current.append(char)
        elif char == '"':
            in_quotes = True
        elif char == delimiter:
            fields.append("".join(current).strip())
            current = []
        else:
            current.append(char)
        i += 1

    fields.append("".join(current).strip())
    return fields


def _empty_table(message: str) -> ParsedTable:
    return ParsedTable(diagnostics=[ParseDiagnostic(row_index=0, message=message)])


def parse_csv(
    content: Optional[str],
    delimiter: Optional[str] = None,
    has_header: bool = True,
) -> ParsedTable:
    """
    Parse delimited text into rows.

    Args:
        content: Raw file text
        delimiter: Field delimiter; detected from the first line when omitted
        has_header: Whether the first line holds column names

    Returns:
        ParsedTable; rows whose field count differs from the expected count
        are kept and reported in diagnostics
    """
    if not content or not isinstance(content, str):
        return _empty_table("Empty or invalid content")

    lines = split_lines(content)
    if not lines:
        return _empty_table("No data rows found")

    delimiter = delimiter or detect_delimiter(content)
    if delimiter not in SUPPORTED_DELIMITERS:
        logger.debug("Using non-standard delimiter %r", delimiter)

    header_row = None
    data_start = 0
    if has_header:
        header_row = parse_line(lines[0], delimiter)
        data_start = 1

    expected_columns = len(header_row) if header_row else len(parse_line(lines[0], delimiter))

    rows: List[List[str]] = []
    diagnostics: List[ParseDiagnostic] = []
    for line_index in range(data_start, len(lines)):
        line = lines[line_index]
        if line.strip() == "":
            continue

        row = parse_line(line, delimiter)
        if expected_columns > 0 and len(row) != expected_columns:
            row_number = line_index + 1
            diagnostics.append(
                ParseDiagnostic(
                    row_index=row_number,
                    message=f"Row {row_number} has {len(row)} columns, expected {expected_columns}",
                )
            )
        rows.append(row)

    if diagnostics:
        logger.warning("%d rows have an unexpected column count", len(diagnostics))

    return ParsedTable(
        rows=rows,
        header_row=header_row,
        delimiter=delimiter,
        diagnostics=diagnostics,
    )
