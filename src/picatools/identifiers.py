"""Identifier extraction and normalization for catalog records.

Mapping keys are namespace qualified (``ppn:…``, ``isbn:…``, ``issn:…``) and
always built from the normalized value. The raw value as found in the record is
kept alongside so neither form silently replaces the other.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .model import Record

PPN = "ppn"
ISBN = "isbn"
ISSN = "issn"
NAMESPACES = (PPN, ISBN, ISSN)

ISBN_TAG = "004A"
ISSN_TAG = "005A"
NUMBER_CODE = "0"

# Catalog format code, e.g. "Aau" for printed monographs
FORMAT_TAG = "002@"
FORMAT_CODE = "0"

_NON_NUMBER = re.compile(r"[^0-9X]")


@dataclass(frozen=True, slots=True)
class Identifier:
    """An external identifier in raw and normalized form."""

    namespace: str
    raw: str
    normalized: str

    @property
    def key(self) -> str:
        """Namespace-qualified mapping key."""
        return f"{self.namespace}:{self.normalized}"


def normalize(namespace: str, value: str) -> str:
    """Normalize an identifier value.

    PPNs are stripped and keep their check digit (upper-cased ``X``).
    ISBNs and ISSNs keep digits and the ``X`` check digit only.
    """
    value = value.strip().upper()
    if namespace == PPN:
        return value
    return _NON_NUMBER.sub("", value)


def make_identifier(namespace: str, raw: str) -> Identifier | None:
    """Build an :class:`Identifier`, or ``None`` when nothing is left after normalization."""
    if namespace not in NAMESPACES:
        raise ValueError(f"Unknown identifier namespace: {namespace}")
    normalized = normalize(namespace, raw)
    if not normalized:
        return None
    return Identifier(namespace, raw, normalized)


def qualify(namespace: str, value: str) -> str | None:
    """Return the mapping key for ``value``.

    A value already carrying a known namespace prefix (``issn:1234-5678``) is
    normalized within that namespace instead.
    """
    prefix, sep, rest = value.partition(":")
    if sep and prefix.strip().lower() in NAMESPACES:
        namespace, value = prefix.strip().lower(), rest
    identifier = make_identifier(namespace, value)
    return identifier.key if identifier else None


def ppn_identifier(record: Record) -> Identifier | None:
    """The record's PPN (``003@ $0``)."""
    ppn = record.ppn
    return make_identifier(PPN, ppn) if ppn else None


def isbn_identifiers(record: Record) -> list[Identifier]:
    """Every ISBN (``004A $0``) of the record."""
    return _collect(record, ISBN, ISBN_TAG)


def issn_identifiers(record: Record) -> list[Identifier]:
    """Every ISSN (``005A $0``) of the record."""
    return _collect(record, ISSN, ISSN_TAG)


def _collect(record: Record, namespace: str, tag: str) -> list[Identifier]:
    found: list[Identifier] = []
    for raw in record.values(tag, NUMBER_CODE):
        identifier = make_identifier(namespace, raw)
        if identifier is not None and identifier not in found:
            found.append(identifier)
    return found


def primary_identifier(record: Record) -> Identifier | None:
    """Extract the identifier used as the record's mapping key.

    The PPN is preferred; records without one fall back to their first ISBN,
    then their first ISSN.
    """
    ppn = ppn_identifier(record)
    if ppn is not None:
        return ppn
    for candidates in (isbn_identifiers(record), issn_identifiers(record)):
        if candidates:
            return candidates[0]
    return None


def secondary_identifiers(record: Record) -> list[Identifier]:
    """ISBNs and ISSNs of the record other than its primary identifier."""
    primary = primary_identifier(record)
    return [
        identifier
        for identifier in isbn_identifiers(record) + issn_identifiers(record)
        if primary is None or identifier.key != primary.key
    ]


def format_code(record: Record) -> str | None:
    """The catalog format code (``002@ $0``), stripped."""
    value = record.first_value(FORMAT_TAG, FORMAT_CODE)
    return value.strip() if value else None
