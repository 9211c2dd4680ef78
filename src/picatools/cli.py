"""Command-line interface for PICA conversion tools."""

import argparse
import logging
import sys
from pathlib import Path

from .config import DEFAULT_BASE_URL, ConversionConfig
from .exceptions import PicaToolsError
from .identifiers import ISBN, ISSN
from .idlist import DEFAULT_PRIORITY_PREFIXES, collect_records, read_identifier_list
from .idmapper import IdMapper
from .model import Record, encode_records_json
from .output import DocumentWriter
from .parser import ParseResult, ParserOptions, WhitespacePolicy, parse_pica_file
from .picaxml import read_picaxml, write_picaxml
from .pipeline import ConversionPipeline, ConversionSummary
from .sru import DEFAULT_SRU_URL, SruClient
from .transform import DEFAULT_STYLESHEET, XsltTransform, make_resolver

# End-of-run summaries, shown even at the default verbosity
summary_logger = logging.getLogger("picatools.summary")


def setup_logging(verbosity: int = 0) -> None:
    """Configure logging for the CLI application.

    Args:
        verbosity: Logging verbosity level (0=WARNING, 1=INFO, 2+=DEBUG)
    """
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    logging.basicConfig(
        level=level,
        format="%(levelname)s %(name)s:%(lineno)d – %(message)s",
    )
    summary_logger.setLevel(min(level, logging.INFO))


def _load_pica(input_path: Path, whitespace: WhitespacePolicy) -> ParseResult:
    result = parse_pica_file(input_path, ParserOptions(subfield_whitespace=whitespace))
    if result.diagnostics:
        logging.getLogger(__name__).warning(
            "%d parse warnings in %s", len(result.diagnostics), input_path
        )
    if result.dropped:
        logging.getLogger(__name__).warning(
            "%d of %d record blocks in %s dropped while parsing",
            result.dropped,
            result.blocks,
            input_path,
        )
    return result


def _run_conversion(
    config: ConversionConfig,
    records: list[Record],
    mapper: IdMapper,
    aliases: dict[str, list[str]] | None = None,
) -> ConversionSummary:
    records_by_ppn = {record.ppn: record for record in records if record.ppn}
    transform = XsltTransform(
        config.stylesheet,
        resolver=make_resolver(records_by_ppn, resource_dir=config.stylesheet.parent),
        parameters=config.transform_parameters,
    )
    pipeline = ConversionPipeline(mapper, transform, status=config.status)
    writer = DocumentWriter(config.output_dir)
    return pipeline.run(records, writer, aliases)


def _log_summary(summary: ConversionSummary, output_dir: Path, parse_dropped: int = 0) -> None:
    summary_logger.info(f"✓ Wrote {summary.written} documents to: {output_dir}")
    summary_logger.info(
        "Records: %d read, %d dropped (%d unparseable, %d without identifier, "
        "%d duplicates, %d transform failures)",
        summary.records + parse_dropped,
        summary.dropped + parse_dropped,
        parse_dropped,
        summary.no_identifier,
        summary.duplicates,
        summary.transform_failures,
    )
    summary_logger.info(
        "Relations: %d linked, %d embedded, %d unresolved",
        summary.links,
        summary.embedded,
        summary.unresolved,
    )
    if summary.mapper_persisted:
        summary_logger.info(
            "✓ ID mapper updated: %d ids generated, %d keys added",
            summary.ids_generated,
            summary.keys_added,
        )
    else:
        summary_logger.info("ID mapper unchanged")


def _config_from_args(args: argparse.Namespace) -> ConversionConfig:
    return ConversionConfig(
        input_path=Path(args.input),
        output_dir=Path(args.output),
        id_mapper_path=Path(args.id_mapper),
        id_template=args.id_base,
        stylesheet=Path(args.stylesheet),
        status=args.status,
        base_url=args.base_url,
        subfield_whitespace=(
            WhitespacePolicy.STRIP
            if getattr(args, "strip_subfield_whitespace", False)
            else WhitespacePolicy.PRESERVE
        ),
    )


def cmd_convert_import(args: argparse.Namespace) -> None:
    """Convert a PICA+ Importformat file to PICA XML or JSON."""
    input_path = Path(args.input)
    output_path = Path(args.output)
    whitespace = (
        WhitespacePolicy.STRIP if args.strip_subfield_whitespace else WhitespacePolicy.PRESERVE
    )

    logger = logging.getLogger(__name__)
    summary_logger.info(f"Converting {input_path} to {args.format}")

    try:
        result = _load_pica(input_path, whitespace)
        records = result.records

        if args.format == "json":
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(encode_records_json(records))
            count = len(records)
        else:
            count = write_picaxml(records, output_path)

        summary_logger.info(f"✓ Converted {count} records ({result.dropped} dropped while parsing)")
        summary_logger.info(f"✓ Saved to: {output_path}")
        sys.exit(0)

    except (PicaToolsError, OSError) as e:
        logger.error(f"Conversion error: {e}")
        sys.exit(1)


def cmd_convert(args: argparse.Namespace) -> None:
    """Convert records to linked MyCoRe objects."""
    logger = logging.getLogger(__name__)

    try:
        config = _config_from_args(args)
        config.validate()

        parse_dropped = 0
        if args.input_format == "picaxml":
            records = read_picaxml(config.input_path)
        else:
            result = _load_pica(config.input_path, config.subfield_whitespace)
            records = result.records
            parse_dropped = result.dropped
        logger.info(f"Loaded {len(records)} records from {config.input_path}")

        mapper = IdMapper.load(config.id_mapper_path, config.id_template)
        summary = _run_conversion(config, records, mapper)

        _log_summary(summary, config.output_dir, parse_dropped)
        sys.exit(0)

    except PicaToolsError as e:
        logger.error(f"✗ Conversion failed: {e}")
        sys.exit(1)


def _cmd_convert_list(args: argparse.Namespace, namespace: str) -> None:
    logger = logging.getLogger(__name__)

    try:
        config = _config_from_args(args)
        config.validate()

        identifiers = read_identifier_list(config.input_path)
        mapper = IdMapper.load(config.id_mapper_path, config.id_template)
        client = SruClient(args.sru_url)

        selection = collect_records(
            identifiers, namespace, client, mapper, priority_prefix=args.priority_prefix
        )
        if selection.failed:
            logger.warning(
                f"Lookup failed for {len(selection.failed)} identifiers: "
                f"{', '.join(selection.failed[:10])}"
            )

        summary = _run_conversion(config, selection.records, mapper, selection.aliases)

        _log_summary(summary, config.output_dir)
        summary_logger.info(
            f"{namespace.upper()} list: {len(identifiers)} total, "
            f"{len(selection.records)} fetched, {len(selection.skipped)} skipped, "
            f"{len(selection.failed)} failed"
        )
        sys.exit(0)

    except PicaToolsError as e:
        logger.error(f"✗ {namespace.upper()} list conversion failed: {e}")
        sys.exit(1)


def cmd_convert_isbn_list(args: argparse.Namespace) -> None:
    """Fetch records for a list of ISBNs and convert them."""
    _cmd_convert_list(args, ISBN)


def cmd_convert_issn_list(args: argparse.Namespace) -> None:
    """Fetch records for a list of ISSNs and convert them."""
    _cmd_convert_list(args, ISSN)


def _add_conversion_arguments(parser: argparse.ArgumentParser, input_help: str) -> None:
    parser.add_argument("-i", "--input", required=True, help=input_help)
    parser.add_argument(
        "-o", "--output", required=True, help="Output directory for MyCoRe object files"
    )
    parser.add_argument(
        "--id-mapper", required=True, help="Identifier mapping store (created if missing)"
    )
    parser.add_argument(
        "--id-base",
        required=True,
        help="Id template with trailing digits, e.g. 'mir_mods_00000000'",
    )
    parser.add_argument(
        "-s",
        "--stylesheet",
        default=str(DEFAULT_STYLESHEET),
        help="XSLT stylesheet producing MODS (default: bundled pica2mods.xsl)",
    )
    parser.add_argument(
        "--status", default="published", help="MyCoRe servstate of generated objects"
    )
    parser.add_argument(
        "--base-url",
        default=DEFAULT_BASE_URL,
        help=f"WebApplicationBaseURL stylesheet parameter (default: {DEFAULT_BASE_URL})",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI."""
    parser = argparse.ArgumentParser(
        prog="pica",
        description="Convert PICA+ catalog records to PICA XML and linked MyCoRe/MODS objects.",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use -v for INFO, -vv for DEBUG)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # convert-import subcommand
    import_parser = subparsers.add_parser(
        "convert-import", help="Convert PICA+ Importformat to PICA XML or JSON"
    )
    import_parser.add_argument("-i", "--input", required=True, help="PICA+ Importformat file")
    import_parser.add_argument("-o", "--output", required=True, help="Output file")
    import_parser.add_argument(
        "--format", choices=["xml", "json"], default="xml", help="Output format (default: xml)"
    )
    import_parser.add_argument(
        "--strip-subfield-whitespace",
        action="store_true",
        help="Strip leading/trailing whitespace from subfield values",
    )
    import_parser.set_defaults(func=cmd_convert_import)

    # convert subcommand
    convert_parser = subparsers.add_parser(
        "convert", help="Convert records to MyCoRe objects with resolved relations"
    )
    _add_conversion_arguments(convert_parser, "PICA+ Importformat or PICA XML file")
    convert_parser.add_argument(
        "--input-format",
        choices=["pica", "picaxml"],
        default="pica",
        help="Input file format (default: pica)",
    )
    convert_parser.add_argument(
        "--strip-subfield-whitespace",
        action="store_true",
        help="Strip leading/trailing whitespace from subfield values",
    )
    convert_parser.set_defaults(func=cmd_convert)

    # convert-isbn-list / convert-issn-list subcommands
    for namespace, handler in ((ISBN, cmd_convert_isbn_list), (ISSN, cmd_convert_issn_list)):
        list_parser = subparsers.add_parser(
            f"convert-{namespace}-list",
            help=f"Fetch records for a list of {namespace.upper()}s via SRU and convert them",
        )
        _add_conversion_arguments(list_parser, f"File with one {namespace.upper()} per line")
        list_parser.add_argument(
            "--sru-url", default=DEFAULT_SRU_URL, help=f"SRU endpoint (default: {DEFAULT_SRU_URL})"
        )
        list_parser.add_argument(
            "--priority-prefix",
            default=DEFAULT_PRIORITY_PREFIXES[namespace],
            help=(
                "Preferred 002@ $0 prefix when several records match "
                f"(default: {DEFAULT_PRIORITY_PREFIXES[namespace]})"
            ),
        )
        list_parser.set_defaults(func=handler)

    return parser


def main() -> None:
    """Main entry point for the pica CLI."""
    parser = create_parser()
    args = parser.parse_args()

    # Setup logging based on verbosity
    setup_logging(args.verbose)

    # Handle case where no subcommand is provided
    if not hasattr(args, "func"):
        parser.print_help()
        sys.exit(1)

    # Execute the subcommand
    args.func(args)


if __name__ == "__main__":
    main()
