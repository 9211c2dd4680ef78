"""Tests for the two-pass conversion pipeline."""

from collections.abc import Mapping
from pathlib import Path

import pytest
from lxml import etree

from picatools.exceptions import FileOperationError, TransformError
from picatools.idmapper import IdMapper
from picatools.model import Field, Record, Subfield
from picatools.mycore import MODS_NS, XLINK_NS, find_mods
from picatools.output import DocumentWriter
from picatools.pipeline import (
    TEMP_NS,
    ConversionPipeline,
    RelationKind,
    extract_placeholders,
)

NS = {"mods": MODS_NS, "xlink": XLINK_NS}
HREF = f"{{{XLINK_NS}}}href"


def field(tag: str, *subfields: tuple[str, str]) -> Field:
    return Field(tag, subfields=tuple(Subfield(code, value) for code, value in subfields))


def make_record(ppn: str | None, title: str, *extra: Field) -> Record:
    fields = [field("021A", ("a", title)), *extra]
    if ppn is not None:
        fields.insert(0, field("003@", ("0", ppn)))
    return Record(fields=tuple(fields))


def fake_transform(record: Record, target_id: str, parameters: Mapping[str, str]) -> bytes:
    """MODS with one relatedItem per 039B $9 (PPN) and 039E $6 (ISSN)."""
    related = "".join(
        f'<mods:relatedItem type="host" temp:relatedPPN="ppn:{ppn}"/>'
        for ppn in record.values("039B", "9")
    )
    related += "".join(
        f'<mods:relatedItem type="series" temp:relatedISSN="issn:{issn}"/>'
        for issn in record.values("039E", "6")
    )
    title = record.first_value("021A", "a") or ""
    return (
        f'<mods:mods xmlns:mods="{MODS_NS}" xmlns:temp="{TEMP_NS}">'
        f"<mods:identifier type=\"local\">{target_id}</mods:identifier>"
        f"{related}"
        f"<mods:titleInfo><mods:title>{title}</mods:title></mods:titleInfo>"
        "</mods:mods>"
    ).encode()


class ListWriter:
    """Collects written documents in memory."""

    def __init__(self) -> None:
        self.documents: dict[str, etree._ElementTree] = {}

    def write(self, target_id: str, document: etree._ElementTree) -> None:
        assert target_id not in self.documents, f"{target_id} written twice"
        self.documents[target_id] = document


@pytest.fixture
def mapper(tmp_path: Path) -> IdMapper:
    return IdMapper.load(tmp_path / "mapper.properties", "P0000")


RECORD_A = make_record("100", "Article A", field("039E", ("6", "555")))
RECORD_B = make_record("200", "Journal B", field("005A", ("0", "555")))


class TestEndToEnd:
    """Tests for complete runs."""

    def test_forward_reference_resolved_and_embedded(self, mapper: IdMapper):
        writer = ListWriter()
        pipeline = ConversionPipeline(mapper, fake_transform)

        summary = pipeline.run([RECORD_A, RECORD_B], writer)

        assert mapper.lookup("ppn:100") == "P0001"
        assert mapper.lookup("ppn:200") == "P0002"
        assert mapper.lookup("issn:555") == "P0002"
        assert set(writer.documents) == {"P0001", "P0002"}

        related = find_mods(writer.documents["P0001"]).findall("mods:relatedItem", NS)
        assert len(related) == 1
        assert related[0].get(HREF) == "P0002"
        assert related[0].get(f"{{{TEMP_NS}}}relatedISSN") is None
        embedded = related[0].find("mods:mods", NS)
        assert embedded.findtext("mods:titleInfo/mods:title", namespaces=NS) == "Journal B"

        document_b = writer.documents["P0002"]
        assert document_b.xpath("//@xlink:href", namespaces=NS) == []
        assert find_mods(document_b).find("mods:relatedItem", NS) is None

        assert summary.records == 2
        assert summary.drafts == 2
        assert summary.links == 1
        assert summary.embedded == 1
        assert summary.unresolved == 0
        assert summary.ids_generated == 2
        assert summary.keys_added == 1
        assert summary.mapper_persisted is True

    def test_unresolved_relation_dropped(self, mapper: IdMapper):
        writer = ListWriter()
        record = make_record("100", "Orphan", field("039B", ("9", "999")))

        summary = ConversionPipeline(mapper, fake_transform).run([record], writer)

        document = writer.documents["P0001"]
        serialized = etree.tostring(document)
        assert b"urn:temp-linking" not in serialized
        assert b"relatedPPN" not in serialized
        related = find_mods(document).find("mods:relatedItem", NS)
        assert related is not None
        assert related.get(HREF) is None
        assert summary.unresolved == 1
        assert summary.links == 0

    def test_relation_to_previously_mapped_record_links_without_embedding(
        self, tmp_path: Path
    ):
        store = tmp_path / "mapper.properties"
        store.write_text("ppn:300=P0042\n", encoding="utf-8")
        mapper = IdMapper.load(store, "P0000")
        writer = ListWriter()
        record = make_record("100", "Part", field("039B", ("9", "300")))

        summary = ConversionPipeline(mapper, fake_transform).run([record], writer)

        assert mapper.lookup("ppn:100") == "P0043"
        related = find_mods(writer.documents["P0043"]).find("mods:relatedItem", NS)
        assert related.get(HREF) == "P0042"
        assert related.find("mods:mods", NS) is None
        assert summary.embedded == 0

    def test_self_reference_links_without_embedding(self, mapper: IdMapper):
        writer = ListWriter()
        record = make_record("100", "Self", field("039B", ("9", "100")))

        ConversionPipeline(mapper, fake_transform).run([record], writer)

        related = find_mods(writer.documents["P0001"]).find("mods:relatedItem", NS)
        assert related.get(HREF) == "P0001"
        assert related.find("mods:mods", NS) is None

    def test_embedded_copy_carries_no_placeholders(self, mapper: IdMapper):
        writer = ListWriter()
        host = make_record("200", "Host", field("039B", ("9", "999")))
        part = make_record("100", "Part", field("039B", ("9", "200")))

        ConversionPipeline(mapper, fake_transform).run([part, host], writer)

        serialized = etree.tostring(writer.documents["P0001"])
        assert b"relatedPPN" not in serialized
        assert find_mods(writer.documents["P0001"]).find(
            "mods:relatedItem/mods:mods/mods:titleInfo/mods:title", NS
        ).text == "Host"

    def test_documents_written_to_disk(self, mapper: IdMapper, tmp_path: Path):
        writer = DocumentWriter(tmp_path / "out")

        ConversionPipeline(mapper, fake_transform, status="submitted").run(
            [RECORD_A, RECORD_B], writer
        )

        assert sorted(path.name for path in (tmp_path / "out").iterdir()) == [
            "P0001.xml",
            "P0002.xml",
        ]
        document = etree.parse(str(tmp_path / "out" / "P0001.xml"))
        assert document.getroot().get("ID") == "P0001"
        assert document.find("service/servstates/servstate").get("categid") == "submitted"


class TestPass1:
    """Tests for draft building."""

    def test_records_without_identifier_dropped(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)

        drafts = pipeline.build_drafts([make_record(None, "No id"), RECORD_A])

        assert list(drafts) == ["P0001"]
        assert pipeline.summary.no_identifier == 1

    def test_isbn_fallback_identifier(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)
        record = make_record(None, "Book", field("004A", ("0", "3-16-148410-X")))

        drafts = pipeline.build_drafts([record])

        assert drafts["P0001"].primary_key == "isbn:316148410X"

    def test_duplicates_keep_first(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)
        duplicate = make_record("100", "Second copy")

        drafts = pipeline.build_drafts([RECORD_A, duplicate])

        assert len(drafts) == 1
        mods = find_mods(drafts["P0001"].content)
        assert mods.findtext("mods:titleInfo/mods:title", namespaces=NS) == "Article A"
        assert pipeline.summary.duplicates == 1

    def test_keys_mapping_to_same_target_treated_as_duplicates(self, tmp_path: Path):
        store = tmp_path / "mapper.properties"
        store.write_text("ppn:100=P0001\nppn:101=P0001\n", encoding="utf-8")
        pipeline = ConversionPipeline(IdMapper.load(store, "P0000"), fake_transform)

        drafts = pipeline.build_drafts([make_record("100", "One"), make_record("101", "Two")])

        assert list(drafts) == ["P0001"]
        assert pipeline.summary.duplicates == 1

    def test_transform_failure_skips_record(self, mapper: IdMapper):
        def failing(record: Record, target_id: str, parameters: Mapping[str, str]) -> bytes:
            if record.ppn == "100":
                raise TransformError("boom")
            return fake_transform(record, target_id, parameters)

        pipeline = ConversionPipeline(mapper, failing)

        drafts = pipeline.build_drafts([RECORD_A, RECORD_B])

        assert list(drafts) == ["P0002"]
        assert pipeline.summary.transform_failures == 1

    def test_malformed_transform_output_skips_record(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, lambda record, target_id, parameters: b"<broken")

        drafts = pipeline.build_drafts([RECORD_A])

        assert drafts == {}
        assert pipeline.summary.transform_failures == 1

    def test_parameters_passed_to_transform(self, mapper: IdMapper):
        seen: list[Mapping[str, str]] = []

        def recording(record: Record, target_id: str, parameters: Mapping[str, str]) -> bytes:
            seen.append(parameters)
            return fake_transform(record, target_id, parameters)

        pipeline = ConversionPipeline(mapper, recording, parameters={"Mode": "test"})
        pipeline.build_drafts([RECORD_A])

        assert seen == [{"Mode": "test"}]

    def test_placeholders_extracted_in_order(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)
        record = make_record(
            "100", "Many", field("039B", ("9", "200")), field("039E", ("6", "1234-5678"))
        )

        draft = pipeline.build_drafts([record])["P0001"]

        assert [(p.referenced_key, p.kind) for p in draft.placeholders] == [
            ("ppn:200", RelationKind.HOST),
            ("issn:12345678", RelationKind.SERIES),
        ]
        assert extract_placeholders(draft.content) == draft.placeholders

    def test_aliases_registered(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)

        pipeline.build_drafts([RECORD_A], aliases={"ppn:100": ["isbn:316148410X"]})

        assert mapper.lookup("isbn:316148410X") == "P0001"


class TestPass2:
    """Tests for relation resolution."""

    def test_resolve_does_not_mutate_draft(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)
        drafts = pipeline.build_drafts([RECORD_A, RECORD_B])
        before = etree.tostring(drafts["P0001"].content)

        final = pipeline.resolve(drafts["P0001"], drafts)

        assert etree.tostring(drafts["P0001"].content) == before
        assert final.target_id == "P0001"
        assert final.content is not drafts["P0001"].content

    def test_embedding_is_a_copy(self, mapper: IdMapper):
        pipeline = ConversionPipeline(mapper, fake_transform)
        drafts = pipeline.build_drafts([RECORD_A, RECORD_B])

        final = pipeline.resolve(drafts["P0001"], drafts)
        find_mods(drafts["P0002"].content).find("mods:titleInfo/mods:title", NS).text = "Changed"

        embedded_title = final.content.find(
            ".//mods:relatedItem/mods:mods/mods:titleInfo/mods:title", NS
        )
        assert embedded_title.text == "Journal B"


class TestPersistence:
    """Tests for mapper persistence at the end of a run."""

    def test_rerun_does_not_rewrite_store(self, tmp_path: Path):
        store = tmp_path / "mapper.properties"

        first = ConversionPipeline(IdMapper.load(store, "P0000"), fake_transform)
        assert first.run([RECORD_A, RECORD_B], ListWriter()).mapper_persisted is True
        content = store.read_text(encoding="utf-8")

        store.write_text("# kept\n" + content, encoding="utf-8")
        second = ConversionPipeline(IdMapper.load(store, "P0000"), fake_transform)
        summary = second.run([RECORD_A, RECORD_B], ListWriter())

        assert summary.mapper_persisted is False
        assert summary.ids_generated == 0
        assert store.read_text(encoding="utf-8").startswith("# kept\n")

    def test_failed_write_aborts_without_persisting(self, tmp_path: Path):
        store = tmp_path / "mapper.properties"
        mapper = IdMapper.load(store, "P0000")

        class FailingWriter:
            def write(self, target_id: str, document: etree._ElementTree) -> None:
                raise FileOperationError("disk full")

        with pytest.raises(FileOperationError, match="disk full"):
            ConversionPipeline(mapper, fake_transform).run([RECORD_A], FailingWriter())

        assert not store.exists()

    def test_all_transforms_failing_aborts_without_persisting(self, tmp_path: Path):
        store = tmp_path / "mapper.properties"
        mapper = IdMapper.load(store, "P0000")

        def failing(record: Record, target_id: str, parameters: Mapping[str, str]) -> bytes:
            raise TransformError("stylesheet broken")

        writer = ListWriter()
        with pytest.raises(TransformError, match="All 2 transformed records failed"):
            ConversionPipeline(mapper, failing).run([RECORD_A, RECORD_B], writer)

        assert writer.documents == {}
        assert not store.exists()
