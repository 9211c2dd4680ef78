"""Record transformation into MODS.

The pipeline only relies on the :class:`Transform` protocol: a pure,
deterministic callable turning a record and its target id into MODS XML.
:class:`XsltTransform` is the stylesheet-based implementation; how the
stylesheet finds its own sub-resources is decided by a resolver function
handed in from outside.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Protocol
from urllib.parse import parse_qs, urlsplit

from lxml import etree

from .exceptions import ConfigurationError, TransformError
from .model import Record
from .picaxml import PICA_XML_NS, record_to_element, record_to_string

logger = logging.getLogger(__name__)

BUNDLED_XSL_DIR = Path(__file__).parent / "xsl"
DEFAULT_STYLESHEET = BUNDLED_XSL_DIR / "pica2mods.xsl"

OBJECT_ID_PARAM = "ObjectID"
RESOURCE_SCHEME = "resource:"
UNAPI_HOST = "unapi.k10plus.de"
# Check digit is optional in unAPI ids
UNAPI_PPN_PATTERN = re.compile(r"gvk:ppn:([0-9]+[0-9X]?)$", re.IGNORECASE)
EMPTY_COLLECTION = f"<collection xmlns=\"{PICA_XML_NS}\"/>".encode()

Resolver = Callable[[str], str | bytes | None]


class Transform(Protocol):
    """Turn a record into MODS XML for a given target id."""

    def __call__(
        self, record: Record, target_id: str, parameters: Mapping[str, str]
    ) -> str | bytes: ...


class _FunctionResolver(etree.Resolver):
    """Adapt a plain resolver function to lxml's resolver interface."""

    def __init__(self, resolve: Resolver) -> None:
        super().__init__()
        self._resolve = resolve

    def resolve(self, system_url: str, public_id: str | None, context: object) -> object:
        data = self._resolve(system_url)
        if data is None:
            return None
        if isinstance(data, str):
            data = data.encode("utf-8")
        return self.resolve_string(data, context, base_url=system_url)


class XsltTransform:
    """Transform records with an XSLT stylesheet.

    Args:
        stylesheet: Path to the stylesheet
        resolver: Optional function serving ``xsl:include``/``document()`` URLs
        parameters: Static stylesheet parameters passed on every call

    Raises:
        ConfigurationError: If the stylesheet cannot be loaded or compiled
    """

    def __init__(
        self,
        stylesheet: Path,
        resolver: Resolver | None = None,
        parameters: Mapping[str, str] | None = None,
    ) -> None:
        self.stylesheet = stylesheet
        self.parameters = dict(parameters or {})

        parser = etree.XMLParser(resolve_entities=False)
        if resolver is not None:
            parser.resolvers.add(_FunctionResolver(resolver))

        logger.debug(f"Loading XSLT stylesheet: {stylesheet}")
        try:
            xslt_doc = etree.parse(str(stylesheet), parser)
            self._xslt = etree.XSLT(xslt_doc)
        except OSError as e:
            raise ConfigurationError(f"XSLT stylesheet not readable: {stylesheet}: {e}") from e
        except (etree.XMLSyntaxError, etree.XSLTParseError) as e:
            raise ConfigurationError(f"Invalid XSLT stylesheet {stylesheet}: {e}") from e

        # Some libxslt versions log compile errors without failing
        errors = self._xslt.error_log.filter_from_errors()
        if errors:
            raise ConfigurationError(f"Invalid XSLT stylesheet {stylesheet}: {errors[0].message}")

    def __call__(
        self, record: Record, target_id: str, parameters: Mapping[str, str] | None = None
    ) -> bytes:
        merged = {**self.parameters, **(parameters or {}), OBJECT_ID_PARAM: target_id}
        xslt_params = {name: etree.XSLT.strparam(value) for name, value in merged.items()}

        source = etree.ElementTree(record_to_element(record))
        try:
            result = self._xslt(source, **xslt_params)
        except etree.XSLTApplyError as e:
            raise TransformError(f"XSLT transformation failed for {target_id}: {e}") from e

        for entry in self._xslt.error_log:
            logger.debug("XSLT message for %s: %s", target_id, entry.message)

        root = result.getroot()
        if root is None:
            raise TransformError(f"XSLT transformation produced no document for {target_id}")
        return etree.tostring(root, encoding="utf-8")


def make_resolver(
    records_by_ppn: Mapping[str, Record] | None = None,
    resource_dir: Path | None = None,
) -> Resolver:
    """Build the default resolver for :class:`XsltTransform`.

    * unAPI PICA XML requests (``https://unapi.k10plus.de/?format=picaxml&id=gvk:ppn:…``)
      are answered from ``records_by_ppn``, matching with or without check digit.
    * ``resource:<path>`` URLs are read from ``resource_dir`` (the bundled
      stylesheet directory by default).
    * Anything else returns ``None`` so lxml's default loading applies.
    """
    records = {ppn.upper(): record for ppn, record in (records_by_ppn or {}).items()}
    without_check_digit = {ppn[:-1]: ppn for ppn in records if len(ppn) > 1}
    base_dir = resource_dir or BUNDLED_XSL_DIR

    def find_record(requested: str) -> Record | None:
        requested = requested.upper()
        ppn = requested if requested in records else None
        if ppn is None:
            ppn = without_check_digit.get(requested) or without_check_digit.get(requested[:-1])
        return records.get(ppn) if ppn else None

    def resolve(url: str) -> bytes | None:
        if url.startswith(RESOURCE_SCHEME):
            resource = base_dir / url[len(RESOURCE_SCHEME) :].lstrip("/")
            try:
                data = resource.read_bytes()
            except OSError:
                logger.warning(f"Could not resolve '{url}' (tried {resource})")
                return None
            logger.debug(f"Resolved '{url}' to {resource}")
            return data

        parts = urlsplit(url)
        if parts.hostname and parts.hostname.lower() == UNAPI_HOST:
            query = {key.lower(): values for key, values in parse_qs(parts.query).items()}
            fmt = (query.get("format") or [""])[0]
            unapi_id = (query.get("id") or [""])[0]
            match = UNAPI_PPN_PATTERN.search(unapi_id)
            if fmt.lower() == "picaxml" and match:
                record = find_record(match.group(1))
                if record is None:
                    logger.warning(f"Could not find PICA record for PPN {match.group(1)} in this run")
                    return EMPTY_COLLECTION
                logger.debug(f"Serving PICA record for PPN {match.group(1)} from this run")
                return record_to_string(record)

        return None

    return resolve
