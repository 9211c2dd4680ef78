"""PICA XML serialization of the record model."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from lxml import etree

from .exceptions import FileOperationError, InvalidDataError
from .model import Field, Record, Subfield

logger = logging.getLogger(__name__)

PICA_XML_NS = "info:srw/schema/5/picaXML-v1.0"
NSMAP = {"pica": PICA_XML_NS}


def _qname(local: str) -> str:
    return f"{{{PICA_XML_NS}}}{local}"


def record_to_element(record: Record) -> etree._Element:
    """Build a ``record`` element in the PICA XML default namespace."""
    record_el = etree.Element(_qname("record"), nsmap={None: PICA_XML_NS})
    for field in record.fields:
        field_el = etree.SubElement(record_el, _qname("datafield"), tag=field.tag)
        if field.occurrence is not None:
            field_el.set("occurrence", field.occurrence)
        for subfield in field.subfields:
            subfield_el = etree.SubElement(field_el, _qname("subfield"), code=subfield.code)
            subfield_el.text = subfield.value
    return record_el


def records_to_collection(records: Iterable[Record]) -> etree._Element:
    """Wrap records in a ``collection`` element."""
    collection = etree.Element(_qname("collection"), nsmap={None: PICA_XML_NS})
    for record in records:
        collection.append(record_to_element(record))
    return collection


def record_to_string(record: Record) -> bytes:
    """Serialize a single record element, compact."""
    return etree.tostring(record_to_element(record), encoding="utf-8")


def write_picaxml(records: Iterable[Record], output_path: Path) -> int:
    """Write records as a pretty-printed PICA XML collection.

    Args:
        records: Records to write
        output_path: Destination file

    Returns:
        Number of records written

    Raises:
        FileOperationError: If the file cannot be written
    """
    collection = records_to_collection(records)
    tree = etree.ElementTree(collection)

    try:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        tree.write(str(output_path), encoding="utf-8", xml_declaration=True, pretty_print=True)
    except OSError as e:
        raise FileOperationError(f"Failed to write PICA XML to {output_path}: {e}") from e

    logger.info(f"Wrote {len(collection)} records to {output_path}")
    return len(collection)


def element_to_record(record_el: etree._Element) -> Record | None:
    """Convert a PICA XML ``record`` element into a :class:`Record`.

    Datafields with an invalid tag or occurrence are skipped with a warning.
    Returns ``None`` if no datafield survives.
    """
    fields: list[Field] = []
    for field_el in record_el.iterfind("pica:datafield", NSMAP):
        subfields = tuple(
            Subfield(subfield_el.get("code", ""), subfield_el.text or "")
            for subfield_el in field_el.iterfind("pica:subfield", NSMAP)
            if len(subfield_el.get("code", "")) == 1
        )
        try:
            fields.append(
                Field(
                    tag=field_el.get("tag", ""),
                    occurrence=field_el.get("occurrence"),
                    subfields=subfields,
                )
            )
        except ValueError as e:
            logger.warning(f"Skipping datafield: {e}")

    if not fields:
        return None
    return Record(fields=tuple(fields))


def records_from_element(root: etree._Element) -> list[Record]:
    """Collect every PICA ``record`` below (or at) ``root``."""
    if root.tag == _qname("record"):
        candidates = [root]
    else:
        candidates = list(root.iter(_qname("record")))

    records: list[Record] = []
    for record_el in candidates:
        record = element_to_record(record_el)
        if record is None:
            logger.warning("Skipping PICA XML record without datafields")
            continue
        records.append(record)
    return records


def read_picaxml(input_path: Path) -> list[Record]:
    """Read all records from a PICA XML file.

    Raises:
        FileOperationError: If the file cannot be read
        InvalidDataError: If the file is not well-formed XML
    """
    logger.info(f"Parsing PICA XML file: {input_path}")

    try:
        tree = etree.parse(str(input_path), etree.XMLParser(resolve_entities=False))
    except OSError as e:
        raise FileOperationError(f"Cannot read PICA XML input {input_path}: {e}") from e
    except etree.XMLSyntaxError as e:
        raise InvalidDataError(f"Invalid PICA XML in {input_path}: {e}") from e

    records = records_from_element(tree.getroot())
    logger.info(f"Found {len(records)} PICA records in {input_path.name}")
    return records
