"""Identifier-list ingestion: fetch one record per ISBN or ISSN."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from .exceptions import FileOperationError, LookupServiceError
from .identifiers import ISBN, ISSN, make_identifier, ppn_identifier
from .idmapper import IdMapper
from .model import Record
from .sru import SruClient, select_record

logger = logging.getLogger(__name__)

# 002@ $0 prefixes preferred when several records match
DEFAULT_PRIORITY_PREFIXES = {ISBN: "Aa", ISSN: "Ab"}


@dataclass(slots=True)
class IdentifierListResult:
    """Records selected for an identifier list."""

    records: list[Record] = field(default_factory=list)
    aliases: dict[str, list[str]] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)


def read_identifier_list(path: Path) -> list[str]:
    """Read one identifier per line, ignoring blank lines and ``#`` comments.

    Raises:
        FileOperationError: If the list cannot be read
    """
    try:
        with open(path, encoding="utf-8") as f:
            lines = [line.strip() for line in f]
    except (OSError, UnicodeDecodeError) as e:
        raise FileOperationError(f"Cannot read identifier list {path}: {e}") from e

    identifiers = [line for line in lines if line and not line.startswith("#")]
    logger.info(f"Found {len(identifiers)} identifiers in {path}")
    return identifiers


def collect_records(
    identifiers: list[str],
    namespace: str,
    client: SruClient,
    mapper: IdMapper,
    priority_prefix: str | None = None,
) -> IdentifierListResult:
    """Look up and select one record per identifier.

    Identifiers already present in the mapper are skipped. Each selected
    record is returned together with an alias from its PPN key to the list
    identifier's key, so the conversion maps both to the same target id.
    """
    if namespace not in (ISBN, ISSN):
        raise ValueError(f"Identifier lists support isbn and issn, not {namespace}")
    prefix = priority_prefix if priority_prefix is not None else DEFAULT_PRIORITY_PREFIXES[namespace]

    result = IdentifierListResult()
    for position, raw in enumerate(identifiers, start=1):
        logger.info(f"Processing {namespace.upper()} {position}/{len(identifiers)}: {raw}")

        identifier = make_identifier(namespace, raw)
        if identifier is None:
            logger.warning(f"Ignoring invalid {namespace.upper()} {raw!r}")
            result.skipped.append(raw)
            continue

        existing = mapper.lookup(identifier.key)
        if existing is not None:
            logger.info(f"{identifier.key} already mapped to {existing}, skipping")
            result.skipped.append(raw)
            continue

        try:
            candidates = client.search(namespace, identifier.normalized)
        except LookupServiceError as e:
            logger.error(f"Lookup failed for {namespace.upper()} {raw}: {e}")
            result.failed.append(raw)
            continue

        record = select_record(candidates, prefix)
        if record is None:
            logger.warning(f"No PICA records found for {namespace.upper()} {raw}, skipping")
            result.skipped.append(raw)
            continue

        ppn = ppn_identifier(record)
        if ppn is None:
            logger.warning(f"Selected record for {namespace.upper()} {raw} has no PPN, skipping")
            result.skipped.append(raw)
            continue

        if ppn.key not in result.aliases:
            result.records.append(record)
        aliases = result.aliases.setdefault(ppn.key, [])
        if identifier.key not in aliases:
            aliases.append(identifier.key)
        logger.debug(f"Selected PPN {ppn.normalized} for {namespace.upper()} {raw}")

    logger.info(
        f"Selected {len(result.records)} records "
        f"({len(result.skipped)} skipped, {len(result.failed)} failed)"
    )
    return result
