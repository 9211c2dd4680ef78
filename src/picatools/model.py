"""Record model for PICA+ catalog records.

Records, fields and subfields are immutable ``msgspec`` structs. Order of
fields within a record and of subfields within a field is significant, and
duplicate subfield codes are kept as they are.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator

import msgspec

# Reserved control delimiters of the PICA+ Importformat
RECORD_SEPARATOR = "\x1d"
FIELD_INTRODUCER = "\x1e"
SUBFIELD_SEPARATOR = "\x1f"

TAG_PATTERN = re.compile(r"^[A-Za-z0-9@]{4}$")
OCCURRENCE_PATTERN = re.compile(r"^[0-9]{2}$")

PPN_TAG = "003@"
PPN_CODE = "0"


class Subfield(msgspec.Struct, frozen=True):
    """A single coded value inside a field."""

    code: str
    value: str

    def __post_init__(self) -> None:
        if len(self.code) != 1:
            raise ValueError(f"Subfield code must be a single character, got {self.code!r}")


class Field(msgspec.Struct, frozen=True):
    """A tagged field with an optional two-digit occurrence."""

    tag: str
    occurrence: str | None = None
    subfields: tuple[Subfield, ...] = ()

    def __post_init__(self) -> None:
        if not TAG_PATTERN.match(self.tag):
            raise ValueError(f"Invalid field tag: {self.tag!r}")
        if self.occurrence is not None and not OCCURRENCE_PATTERN.match(self.occurrence):
            raise ValueError(f"Invalid occurrence for field {self.tag}: {self.occurrence!r}")

    def has_tag(self, tag: str) -> bool:
        """Compare tags case-insensitively."""
        return self.tag.lower() == tag.lower()

    def values(self, code: str) -> list[str]:
        """Return all values of subfields with ``code``, in field order."""
        return [subfield.value for subfield in self.subfields if subfield.code == code]

    def first(self, code: str) -> str | None:
        """Return the value of the first subfield with ``code``, if any."""
        for subfield in self.subfields:
            if subfield.code == code:
                return subfield.value
        return None


class Record(msgspec.Struct, frozen=True):
    """An ordered sequence of fields describing one catalog record."""

    fields: tuple[Field, ...] = ()

    def __len__(self) -> int:
        return len(self.fields)

    def __iter__(self) -> Iterator[Field]:
        return iter(self.fields)

    def fields_with_tag(self, tag: str) -> list[Field]:
        """Return all fields carrying ``tag`` (case-insensitive)."""
        return [field for field in self.fields if field.has_tag(tag)]

    def values(self, tag: str, code: str) -> list[str]:
        """Return every ``tag $code`` value of the record, in record order."""
        found: list[str] = []
        for field in self.fields_with_tag(tag):
            found.extend(field.values(code))
        return found

    def first_value(self, tag: str, code: str) -> str | None:
        """Return the first ``tag $code`` value of the record, if any."""
        for field in self.fields_with_tag(tag):
            value = field.first(code)
            if value is not None:
                return value
        return None

    @property
    def ppn(self) -> str | None:
        """The catalog production number (``003@ $0``), stripped."""
        value = self.first_value(PPN_TAG, PPN_CODE)
        if value is None:
            return None
        value = value.strip()
        return value or None


def format_field(field: Field) -> str:
    """Render one field as a PICA+ Importformat line (without line break)."""
    head = field.tag if field.occurrence is None else f"{field.tag}/{field.occurrence}"
    body = "".join(
        f"{SUBFIELD_SEPARATOR}{subfield.code}{subfield.value}" for subfield in field.subfields
    )
    return f"{FIELD_INTRODUCER}{head} {body}"


def format_record(record: Record) -> str:
    """Render a record as a PICA+ Importformat block terminated by the record separator."""
    lines = [format_field(field) for field in record.fields]
    return "\n".join(lines) + "\n" + RECORD_SEPARATOR + "\n"


def format_records(records: Iterable[Record]) -> str:
    """Render several records as PICA+ Importformat text."""
    return "".join(format_record(record) for record in records)


def encode_records_json(records: Iterable[Record]) -> bytes:
    """Encode records as a JSON array."""
    return msgspec.json.encode(list(records))


def decode_records_json(data: bytes | str) -> list[Record]:
    """Decode and validate a JSON array of records.

    Raises:
        msgspec.DecodeError: If ``data`` is not valid JSON
        msgspec.ValidationError: If the structure or a tag/occurrence is invalid
    """
    return msgspec.json.decode(data, type=list[Record])
