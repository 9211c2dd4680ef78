"""Helpers for MyCoRe object documents wrapping MODS metadata."""

from __future__ import annotations

import logging

from lxml import etree

from .exceptions import TransformError

logger = logging.getLogger(__name__)

MODS_NS = "http://www.loc.gov/mods/v3"
XLINK_NS = "http://www.w3.org/1999/xlink"
NSMAP = {"mods": MODS_NS, "xlink": XLINK_NS}

MODS_XPATH = etree.XPath(
    "/mycoreobject/metadata/def.modsContainer/modsContainer/mods:mods", namespaces=NSMAP
)

# Canonical order of MODS top-level children
MODS_ORDER = [
    "genre",
    "typeofResource",
    "titleInfo",
    "nonSort",
    "subTitle",
    "title",
    "partNumber",
    "partName",
    "name",
    "namePart",
    "displayForm",
    "role",
    "affiliation",
    "originInfo",
    "place",
    "publisher",
    "dateIssued",
    "dateCreated",
    "dateModified",
    "dateValid",
    "dateOther",
    "edition",
    "issuance",
    "frequency",
    "relatedItem",
    "identifier",
    "language",
    "physicalDescription",
    "abstract",
    "note",
    "subject",
    "classification",
    "location",
    "shelfLocator",
    "url",
    "accessCondition",
    "part",
    "extension",
    "recordInfo",
]
_ORDER_INDEX = {name: index for index, name in enumerate(MODS_ORDER)}


def _parse_mods(mods_xml: str | bytes) -> etree._Element:
    if isinstance(mods_xml, str):
        mods_xml = mods_xml.encode("utf-8")
    parser = etree.XMLParser(remove_blank_text=True, resolve_entities=False)
    try:
        return etree.fromstring(mods_xml, parser)
    except etree.XMLSyntaxError as e:
        raise TransformError(f"Transform produced malformed XML: {e}") from e


def wrap_in_mycore_frame(
    mods_xml: str | bytes, object_id: str, status: str = "published"
) -> etree._ElementTree:
    """Wrap a MODS document in a MyCoRe object frame.

    Args:
        mods_xml: Serialized ``mods:mods`` document
        object_id: Target id, set as the object's ``ID``
        status: Value of the ``servstate`` classification

    Returns:
        The MyCoRe object document

    Raises:
        TransformError: If ``mods_xml`` is not well-formed or not a MODS document
    """
    mods = _parse_mods(mods_xml)
    if mods.tag != f"{{{MODS_NS}}}mods":
        raise TransformError(f"Transform result for {object_id} is not a mods:mods element")

    mycore = etree.Element("mycoreobject", ID=object_id, nsmap={"xlink": XLINK_NS})
    etree.SubElement(mycore, "structure")

    metadata = etree.SubElement(mycore, "metadata")
    container = etree.SubElement(
        metadata,
        "def.modsContainer",
        {"class": "MCRMetaXML", "heritable": "false", "notinherit": "true"},
    )
    mods_container = etree.SubElement(container, "modsContainer", inherited="0")
    mods_container.append(mods)

    service = etree.SubElement(mycore, "service")
    servstates = etree.SubElement(service, "servstates", {"class": "MCRMetaClassification"})
    etree.SubElement(servstates, "servstate", categid=status, classid="state", inherited="0")

    return etree.ElementTree(mycore)


def find_mods(document: etree._ElementTree | etree._Element) -> etree._Element | None:
    """Return the ``mods:mods`` element of a MyCoRe object."""
    found = MODS_XPATH(document)
    return found[0] if found else None


def get_object_id(document: etree._ElementTree) -> str | None:
    return document.getroot().get("ID")


def _sort_position(element: etree._Element) -> tuple[int, str]:
    if not isinstance(element.tag, str):
        return len(MODS_ORDER), ""
    name = etree.QName(element).localname
    return _ORDER_INDEX.get(name, len(MODS_ORDER)), name


def sort_mods(mods: etree._Element) -> None:
    """Reorder MODS children into canonical order (stable within equal names)."""
    children = sorted(mods, key=_sort_position)
    mods[:] = children


def serialize_document(document: etree._ElementTree) -> bytes:
    """Pretty-print a document as UTF-8 with XML declaration."""
    etree.indent(document, space="  ")
    return etree.tostring(document, encoding="utf-8", xml_declaration=True, pretty_print=True)
