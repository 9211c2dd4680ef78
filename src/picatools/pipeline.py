"""Two-pass conversion of catalog records into linked MyCoRe objects.

Pass 1 gives every record its target id and a draft document. Relations in a
draft still name other records by external identifier (``ppn:…``, ``isbn:…``,
``issn:…``) because the referenced record may not have an id yet when the
draft is built. Pass 2 resolves those placeholders against the complete
identifier map and the full set of drafts, and emits each document once.
"""

from __future__ import annotations

import copy
import enum
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from lxml import etree

from .exceptions import TransformError
from .identifiers import primary_identifier, qualify, secondary_identifiers
from .idmapper import IdMapper
from .model import Record
from .mycore import NSMAP as MYCORE_NSMAP
from .mycore import XLINK_NS, find_mods, sort_mods, wrap_in_mycore_frame
from .output import DocumentWriter
from .transform import Transform

logger = logging.getLogger(__name__)

LOG_INTERVAL = 1000

TEMP_NS = "urn:temp-linking"
# Placeholder attribute -> identifier namespace of its value
PLACEHOLDER_ATTRIBUTES = {
    "relatedPPN": "ppn",
    "relatedISBN": "isbn",
    "relatedISSN": "issn",
}
PLACEHOLDER_XPATH = etree.XPath(
    "//mods:relatedItem[@temp:relatedPPN or @temp:relatedISBN or @temp:relatedISSN]",
    namespaces={**MYCORE_NSMAP, "temp": TEMP_NS},
)


class RelationKind(enum.Enum):
    """MODS ``relatedItem`` types."""

    HOST = "host"
    REVIEW_OF = "reviewOf"
    SERIES = "series"
    PRECEDING = "preceding"
    SUCCEEDING = "succeeding"
    ORIGINAL = "original"
    CONSTITUENT = "constituent"
    OTHER_VERSION = "otherVersion"
    OTHER_FORMAT = "otherFormat"
    REFERENCES = "references"
    IS_REFERENCED_BY = "isReferencedBy"
    OTHER = "other"

    @classmethod
    def from_type(cls, value: str | None) -> RelationKind:
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True, slots=True)
class RelationPlaceholder:
    """An unresolved reference from a draft to another record."""

    referenced_key: str
    kind: RelationKind


@dataclass(slots=True)
class DraftDocument:
    """Pass-1 output for one record, pending relation resolution."""

    target_id: str
    primary_key: str
    content: etree._ElementTree
    placeholders: list[RelationPlaceholder] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class FinalDocument:
    """A resolved document ready to be written."""

    target_id: str
    content: etree._ElementTree


@dataclass(slots=True)
class ConversionSummary:
    """Counts reported at the end of a conversion run."""

    records: int = 0
    no_identifier: int = 0
    duplicates: int = 0
    transform_failures: int = 0
    drafts: int = 0
    links: int = 0
    embedded: int = 0
    unresolved: int = 0
    ids_generated: int = 0
    keys_added: int = 0
    written: int = 0
    mapper_persisted: bool = False

    @property
    def dropped(self) -> int:
        return self.no_identifier + self.duplicates + self.transform_failures


def _placeholder_key(element: etree._Element) -> str | None:
    for attribute, namespace in PLACEHOLDER_ATTRIBUTES.items():
        value = element.get(f"{{{TEMP_NS}}}{attribute}")
        if value is not None:
            return qualify(namespace, value)
    return None


def _strip_placeholder(element: etree._Element) -> None:
    for attribute in PLACEHOLDER_ATTRIBUTES:
        element.attrib.pop(f"{{{TEMP_NS}}}{attribute}", None)


def extract_placeholders(content: etree._ElementTree) -> list[RelationPlaceholder]:
    """Find relation placeholders in document order.

    Placeholders whose value normalizes to nothing are kept with an empty key so
    positions stay aligned with :data:`PLACEHOLDER_XPATH`; they never resolve.
    """
    placeholders: list[RelationPlaceholder] = []
    for element in PLACEHOLDER_XPATH(content):
        placeholders.append(
            RelationPlaceholder(
                referenced_key=_placeholder_key(element) or "",
                kind=RelationKind.from_type(element.get("type")),
            )
        )
    return placeholders


def strip_placeholders(root: etree._Element) -> None:
    """Remove every placeholder attribute and the unused ``temp`` namespace."""
    for element in PLACEHOLDER_XPATH(root):
        _strip_placeholder(element)
    etree.cleanup_namespaces(root)


class ConversionPipeline:
    """Convert records into linked MyCoRe objects.

    Args:
        mapper: Identifier store, loaded by the caller
        transform: Record to MODS transform
        parameters: Extra parameters passed to every transform call
        status: MyCoRe ``servstate`` for generated objects
    """

    def __init__(
        self,
        mapper: IdMapper,
        transform: Transform,
        parameters: Mapping[str, str] | None = None,
        status: str = "published",
    ) -> None:
        self.mapper = mapper
        self.transform = transform
        self.parameters = dict(parameters or {})
        self.status = status
        self.summary = ConversionSummary()

    def build_drafts(
        self,
        records: Iterable[Record],
        aliases: Mapping[str, Iterable[str]] | None = None,
    ) -> dict[str, DraftDocument]:
        """Pass 1: assign target ids and build a draft per record.

        Args:
            records: Records in input order
            aliases: Extra keys to map to a record's id, by primary key

        Returns:
            Drafts keyed by target id, in input order
        """
        aliases = aliases or {}
        drafts: dict[str, DraftDocument] = {}
        seen_keys: set[str] = set()
        generated_before = self.mapper.generated_count
        assigned_before = self.mapper.assigned_count

        logger.info("Starting pass 1: generating draft objects")
        for index, record in enumerate(records, start=1):
            self.summary.records += 1
            if index % LOG_INTERVAL == 0:
                logger.info(f"Pass 1: processed {index} records")

            primary = primary_identifier(record)
            if primary is None:
                logger.warning(f"Record #{index} has no PPN, ISBN or ISSN, skipping")
                self.summary.no_identifier += 1
                continue

            if primary.key in seen_keys:
                logger.warning(f"Duplicate identifier {primary.key}, keeping the first occurrence")
                self.summary.duplicates += 1
                continue
            seen_keys.add(primary.key)

            target_id = self.mapper.ensure_id(primary.key)
            if target_id in drafts:
                logger.warning(
                    f"Record {primary.key} maps to {target_id}, which was already converted "
                    f"from {drafts[target_id].primary_key}; skipping"
                )
                self.summary.duplicates += 1
                continue

            for identifier in secondary_identifiers(record):
                self.mapper.assign(identifier.key, target_id)
            for alias in aliases.get(primary.key, ()):
                self.mapper.assign(alias, target_id)

            try:
                draft = self.build_draft(record, target_id, primary.key)
            except TransformError as e:
                logger.error(f"Transform failed for {primary.key} ({target_id}): {e}")
                self.summary.transform_failures += 1
                continue

            drafts[target_id] = draft
            logger.debug(
                f"Pass 1: drafted {target_id} for {primary.key} "
                f"with {len(draft.placeholders)} relation(s)"
            )

        self.summary.drafts = len(drafts)
        self.summary.ids_generated += self.mapper.generated_count - generated_before
        self.summary.keys_added += self.mapper.assigned_count - assigned_before
        logger.info(f"Pass 1 finished: {len(drafts)} drafts")
        return drafts

    def build_draft(self, record: Record, target_id: str, primary_key: str) -> DraftDocument:
        """Transform one record and wrap the result as a draft."""
        mods_xml = self.transform(record, target_id, self.parameters)
        content = wrap_in_mycore_frame(mods_xml, target_id, self.status)
        mods = find_mods(content)
        if mods is not None:
            sort_mods(mods)
        return DraftDocument(
            target_id=target_id,
            primary_key=primary_key,
            content=content,
            placeholders=extract_placeholders(content),
        )

    def resolve(self, draft: DraftDocument, drafts: Mapping[str, DraftDocument]) -> FinalDocument:
        """Pass 2 for one draft: resolve placeholders into a new document.

        The draft itself is left untouched. Resolved relations get an
        ``xlink:href`` to the referenced target id and, when the referenced
        record was drafted in this run, a copy of its MODS embedded.
        Unresolved relations lose their placeholder and carry no link.
        """
        content = copy.deepcopy(draft.content)
        elements = PLACEHOLDER_XPATH(content)

        for element, placeholder in zip(elements, draft.placeholders):
            _strip_placeholder(element)

            related_id = (
                self.mapper.lookup(placeholder.referenced_key)
                if placeholder.referenced_key
                else None
            )
            if related_id is None:
                logger.debug(
                    f"Pass 2: no target id for {placeholder.referenced_key!r} "
                    f"({placeholder.kind.value}) in {draft.target_id}, dropping relation"
                )
                self.summary.unresolved += 1
                continue

            element.set(f"{{{XLINK_NS}}}href", related_id)
            self.summary.links += 1

            related = drafts.get(related_id)
            if related is None or related_id == draft.target_id:
                continue
            related_mods = find_mods(related.content)
            if related_mods is None:
                continue

            embedded = copy.deepcopy(related_mods)
            strip_placeholders(embedded)
            element.append(embedded)
            self.summary.embedded += 1
            logger.debug(f"Pass 2: embedded {related_id} into {draft.target_id}")

        etree.cleanup_namespaces(content, keep_ns_prefixes=["xlink"])
        return FinalDocument(draft.target_id, content)

    def resolve_all(self, drafts: Mapping[str, DraftDocument]) -> Iterable[FinalDocument]:
        """Pass 2: yield one final document per draft."""
        logger.info("Starting pass 2: linking related items")
        for draft in drafts.values():
            yield self.resolve(draft, drafts)

    def run(
        self,
        records: Iterable[Record],
        writer: DocumentWriter,
        aliases: Mapping[str, Iterable[str]] | None = None,
    ) -> ConversionSummary:
        """Run both passes, write every document once and persist the mapper.

        Raises:
            FileOperationError: If a document or the mapper store cannot be written
            TransformError: If every record reaching the transform failed
        """
        drafts = self.build_drafts(records, aliases)
        if not drafts and self.summary.transform_failures:
            raise TransformError(
                f"All {self.summary.transform_failures} transformed records failed, "
                "not writing documents or the ID mapper"
            )

        for document in self.resolve_all(drafts):
            writer.write(document.target_id, document.content)
            self.summary.written += 1

        self.summary.mapper_persisted = self.mapper.persist()

        logger.info(
            f"Pass 2 finished: {self.summary.links} links, {self.summary.embedded} embedded, "
            f"{self.summary.unresolved} unresolved"
        )
        return self.summary
