"""Parser for the PICA+ Importformat.

The input is framed by three control delimiters: ``\\x1d`` separates records,
``\\x1e`` introduces a field line and ``\\x1f`` separates subfields. A field
line reads ``TAG[/OCCURRENCE] VALUE``, for example::

    \\x1e003@ \\x1f0123456789
    \\x1e021A/01 \\x1faEin Buch\\x1fdZum Lesen

The parser never gives up on content problems: malformed lines, malformed
fields, empty subfield chunks and empty records are reported as diagnostics
and skipped. Only an unreadable source is fatal.
"""

from __future__ import annotations

import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import FileOperationError
from .model import FIELD_INTRODUCER, RECORD_SEPARATOR, SUBFIELD_SEPARATOR, Field, Record, Subfield

logger = logging.getLogger(__name__)

# TAG[/OCCURRENCE], one run of spaces or tabs, VALUE. \s is avoided on purpose:
# Python counts the control delimiters \x1c-\x1f as whitespace.
FIELD_LINE_PATTERN = re.compile(r"^([A-Za-z0-9@]{4})(?:/([0-9]{2}))?[ \t]+(.*)$")


class WhitespacePolicy(enum.Enum):
    """How leading/trailing whitespace inside subfield values is treated."""

    PRESERVE = "preserve"
    STRIP = "strip"


@dataclass(slots=True)
class ParserOptions:
    """Options controlling the PICA+ parser."""

    subfield_whitespace: WhitespacePolicy = WhitespacePolicy.PRESERVE


@dataclass(slots=True)
class ParseDiagnostic:
    """A non-fatal problem found while parsing."""

    record_number: int
    message: str
    line: str = ""


@dataclass(slots=True)
class ParseResult:
    """Records and diagnostics produced by one parse."""

    records: list[Record] = field(default_factory=list)
    diagnostics: list[ParseDiagnostic] = field(default_factory=list)
    blocks: int = 0
    dropped: int = 0


def _is_blank(text: str) -> bool:
    return not text.strip(" \t\r\n\f\v")


def _warn(result: ParseResult, record_number: int, message: str, line: str = "") -> None:
    result.diagnostics.append(ParseDiagnostic(record_number, message, line))
    if line:
        logger.warning("Record #%d: %s: %r", record_number, message, line)
    else:
        logger.warning("Record #%d: %s", record_number, message)


def parse_subfields(
    value: str,
    options: ParserOptions,
    result: ParseResult,
    record_number: int,
) -> list[Subfield]:
    """Split a field value into subfields.

    One leading subfield separator is framing and is dropped. Every remaining
    empty chunk (consecutive or trailing separators) is reported and skipped.
    """
    if value.startswith(SUBFIELD_SEPARATOR):
        value = value[1:]

    subfields: list[Subfield] = []
    if not value:
        return subfields

    for chunk in value.split(SUBFIELD_SEPARATOR):
        if not chunk:
            _warn(result, record_number, "Empty subfield chunk in field value", value)
            continue
        subfield_value = chunk[1:]
        if options.subfield_whitespace is WhitespacePolicy.STRIP:
            subfield_value = subfield_value.strip()
        subfields.append(Subfield(chunk[0], subfield_value))

    return subfields


def parse_field_line(
    field_data: str,
    options: ParserOptions,
    result: ParseResult,
    record_number: int,
) -> Field | None:
    """Parse the part of a field line after the field introducer.

    Returns:
        The parsed field, or ``None`` if the line does not match the field grammar
    """
    match = FIELD_LINE_PATTERN.match(field_data)
    if not match:
        _warn(result, record_number, "Field line could not be parsed", field_data)
        return None

    tag, occurrence, value = match.groups()
    subfields = parse_subfields(value, options, result, record_number)
    return Field(tag=tag, occurrence=occurrence, subfields=tuple(subfields))


def parse_block(
    block: str,
    options: ParserOptions,
    result: ParseResult,
    record_number: int,
) -> Record | None:
    """Parse one record block. Returns ``None`` if no field survives."""
    fields: list[Field] = []

    for raw_line in block.split("\n"):
        line = raw_line[:-1] if raw_line.endswith("\r") else raw_line
        if not line:
            continue

        if line.startswith(FIELD_INTRODUCER):
            parsed = parse_field_line(line[1:], options, result, record_number)
            if parsed is not None:
                fields.append(parsed)
            continue

        if _is_blank(line):
            continue
        if line.lstrip(" \t").startswith("#"):
            logger.debug("Record #%d: skipping comment: %s", record_number, line)
            continue

        _warn(result, record_number, "Line does not start with the field introducer", line)

    if not fields:
        return None
    return Record(fields=tuple(fields))


def parse_pica(text: str, options: ParserOptions | None = None) -> ParseResult:
    """Parse PICA+ Importformat text into records.

    Args:
        text: Complete PICA+ Importformat input
        options: Parser options (defaults preserve subfield whitespace)

    Returns:
        A :class:`ParseResult` with the records in input order and all diagnostics
    """
    options = options or ParserOptions()
    result = ParseResult()

    record_number = 0
    for block in text.split(RECORD_SEPARATOR):
        if _is_blank(block):
            continue

        record_number += 1
        result.blocks += 1

        record = parse_block(block, options, result, record_number)
        if record is None:
            result.dropped += 1
            result.diagnostics.append(
                ParseDiagnostic(record_number, "Record has no valid fields, skipping")
            )
            logger.info("Record #%d has no valid fields, skipping", record_number)
            continue

        result.records.append(record)

    logger.debug(
        "Parsed %d records from %d blocks (%d dropped, %d diagnostics)",
        len(result.records),
        result.blocks,
        result.dropped,
        len(result.diagnostics),
    )
    return result


def parse_pica_file(path: Path, options: ParserOptions | None = None) -> ParseResult:
    """Parse a PICA+ Importformat file.

    Args:
        path: Path to a UTF-8 encoded PICA+ file
        options: Parser options

    Returns:
        Parse result for the whole file

    Raises:
        FileOperationError: If the file cannot be read
    """
    logger.info(f"Parsing PICA+ Importformat file: {path}")

    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise FileOperationError(f"Cannot read PICA+ input {path}: {e}") from e

    result = parse_pica(text, options)
    logger.info(f"Parsed {len(result.records)} records from {path.name}")
    return result
