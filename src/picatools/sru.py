"""SRU client for fetching PICA records by ISBN or ISSN."""

from __future__ import annotations

import logging

import requests
from lxml import etree

from .exceptions import LookupServiceError
from .identifiers import ISBN, ISSN, format_code, normalize
from .model import Record
from .picaxml import records_from_element

logger = logging.getLogger(__name__)

DEFAULT_SRU_URL = "https://sru.k10plus.de/opac-de-627"
ZS_NS = "http://www.loc.gov/zing/srw/"
NSMAP = {"zs": ZS_NS, "pica": "info:srw/schema/5/picaXML-v1.0"}

# SRU index per identifier namespace
QUERY_INDEXES = {ISBN: "pica.isb", ISSN: "pica.iss"}


def parse_sru_response(content: bytes) -> list[Record]:
    """Extract PICA records from an SRU ``searchRetrieveResponse``.

    A response without ``zs:records`` (zero hits, or diagnostics only) yields an
    empty list.

    Raises:
        LookupServiceError: If the response is not well-formed XML
    """
    try:
        root = etree.fromstring(content, etree.XMLParser(resolve_entities=False, no_network=True))
    except etree.XMLSyntaxError as e:
        raise LookupServiceError(f"Error parsing SRU response: {e}") from e

    records_el = root.find("zs:records", NSMAP)
    if records_el is None:
        if root.find("zs:diagnostics", NSMAP) is not None:
            logger.debug("SRU response carries diagnostics and no records")
        return []

    records: list[Record] = []
    for record_data in records_el.iterfind("zs:record/zs:recordData", NSMAP):
        records.extend(records_from_element(record_data))
    return records


class SruClient:
    """Search a PICA SRU endpoint.

    Args:
        base_url: SRU endpoint
        session: Optional ``requests`` session (one is created otherwise)
        timeout: Request timeout in seconds
        maximum_records: ``maximumRecords`` for each query
    """

    def __init__(
        self,
        base_url: str = DEFAULT_SRU_URL,
        session: requests.Session | None = None,
        timeout: float = 30.0,
        maximum_records: int = 10,
    ) -> None:
        self.base_url = base_url
        self.session = session or requests.Session()
        self.timeout = timeout
        self.maximum_records = maximum_records

    def search(self, namespace: str, value: str) -> list[Record]:
        """Search records by ISBN or ISSN.

        Raises:
            LookupServiceError: On HTTP or response errors
        """
        if namespace not in QUERY_INDEXES:
            raise ValueError(f"Unsupported SRU search namespace: {namespace}")

        number = normalize(namespace, value)
        params = {
            "version": "1.1",
            "operation": "searchRetrieve",
            "query": f"{QUERY_INDEXES[namespace]}={number}",
            "maximumRecords": str(self.maximum_records),
            "recordSchema": "picaxml",
        }
        logger.debug(f"SRU query {params['query']} at {self.base_url}")

        try:
            response = self.session.get(self.base_url, params=params, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise LookupServiceError(f"SRU request for {namespace} {value} failed: {e}") from e

        records = parse_sru_response(response.content)
        logger.debug(f"SRU returned {len(records)} records for {namespace} {value}")
        return records

    def search_by_isbn(self, isbn: str) -> list[Record]:
        return self.search(ISBN, isbn)

    def search_by_issn(self, issn: str) -> list[Record]:
        return self.search(ISSN, issn)


def select_record(candidates: list[Record], priority_prefix: str) -> Record | None:
    """Pick one record from SRU candidates.

    The first record whose format code (``002@ $0``) starts with
    ``priority_prefix`` wins; otherwise the first candidate is taken.
    """
    if not candidates:
        return None

    for record in candidates:
        code = format_code(record)
        if code is not None and code.startswith(priority_prefix):
            return record

    logger.debug(f"No record with format code prefix '{priority_prefix}', taking the first")
    return candidates[0]
