"""Tests for the SRU client."""

from unittest.mock import Mock

import pytest
import requests

from picatools.exceptions import LookupServiceError
from picatools.model import Field, Record, Subfield
from picatools.sru import DEFAULT_SRU_URL, SruClient, parse_sru_response, select_record

RESPONSE = b"""<?xml version="1.0" encoding="UTF-8"?>
<zs:searchRetrieveResponse xmlns:zs="http://www.loc.gov/zing/srw/">
  <zs:version>1.1</zs:version>
  <zs:numberOfRecords>2</zs:numberOfRecords>
  <zs:records>
    <zs:record>
      <zs:recordSchema>picaxml</zs:recordSchema>
      <zs:recordPacking>xml</zs:recordPacking>
      <zs:recordData>
        <record xmlns="info:srw/schema/5/picaXML-v1.0">
          <datafield tag="002@"><subfield code="0">Oau</subfield></datafield>
          <datafield tag="003@"><subfield code="0">111</subfield></datafield>
        </record>
      </zs:recordData>
      <zs:recordPosition>1</zs:recordPosition>
    </zs:record>
    <zs:record>
      <zs:recordSchema>picaxml</zs:recordSchema>
      <zs:recordPacking>xml</zs:recordPacking>
      <zs:recordData>
        <record xmlns="info:srw/schema/5/picaXML-v1.0">
          <datafield tag="002@"><subfield code="0">Aau</subfield></datafield>
          <datafield tag="003@"><subfield code="0">222</subfield></datafield>
        </record>
      </zs:recordData>
      <zs:recordPosition>2</zs:recordPosition>
    </zs:record>
  </zs:records>
</zs:searchRetrieveResponse>
"""

DIAGNOSTICS = b"""<zs:searchRetrieveResponse xmlns:zs="http://www.loc.gov/zing/srw/">
  <zs:version>1.1</zs:version>
  <zs:diagnostics>
    <diag:diagnostic xmlns:diag="http://www.loc.gov/zing/srw/diagnostic/">
      <diag:uri>info:srw/diagnostic/1/10</diag:uri>
    </diag:diagnostic>
  </zs:diagnostics>
</zs:searchRetrieveResponse>
"""


def mock_session(content: bytes) -> Mock:
    session = Mock()
    session.get.return_value = Mock(content=content)
    return session


def record(format_code: str, ppn: str) -> Record:
    return Record(
        fields=(
            Field("002@", subfields=(Subfield("0", format_code),)),
            Field("003@", subfields=(Subfield("0", ppn),)),
        )
    )


class TestParseSruResponse:
    """Tests for parse_sru_response."""

    def test_records_in_order(self):
        records = parse_sru_response(RESPONSE)
        assert [r.ppn for r in records] == ["111", "222"]

    def test_diagnostics_mean_no_records(self):
        assert parse_sru_response(DIAGNOSTICS) == []

    def test_malformed_response(self):
        with pytest.raises(LookupServiceError, match="Error parsing SRU response"):
            parse_sru_response(b"<zs:searchRetrieveResponse")


class TestSruClient:
    """Tests for SruClient."""

    def test_isbn_query(self):
        session = mock_session(RESPONSE)
        client = SruClient(session=session, maximum_records=5)

        records = client.search_by_isbn("3-16-148410-X")

        assert len(records) == 2
        args, kwargs = session.get.call_args
        assert args == (DEFAULT_SRU_URL,)
        assert kwargs["params"] == {
            "version": "1.1",
            "operation": "searchRetrieve",
            "query": "pica.isb=316148410X",
            "maximumRecords": "5",
            "recordSchema": "picaxml",
        }
        assert kwargs["timeout"] == 30.0

    def test_issn_query(self):
        session = mock_session(DIAGNOSTICS)
        client = SruClient("https://sru.example/db", session=session)

        assert client.search_by_issn("1234-5678") == []
        args, kwargs = session.get.call_args
        assert args == ("https://sru.example/db",)
        assert kwargs["params"]["query"] == "pica.iss=12345678"

    def test_connection_error(self):
        session = Mock()
        session.get.side_effect = requests.ConnectionError("unreachable")

        with pytest.raises(LookupServiceError, match="unreachable"):
            SruClient(session=session).search_by_isbn("316148410X")

    def test_http_error(self):
        session = mock_session(b"")
        session.get.return_value.raise_for_status.side_effect = requests.HTTPError("503")

        with pytest.raises(LookupServiceError, match="503"):
            SruClient(session=session).search_by_issn("12345678")

    def test_unsupported_namespace(self):
        with pytest.raises(ValueError):
            SruClient(session=Mock()).search("ppn", "123")


class TestSelectRecord:
    """Tests for select_record."""

    def test_priority_prefix_wins(self):
        candidates = [record("Oau", "1"), record("Aau", "2"), record("Aal", "3")]
        assert select_record(candidates, "Aa").ppn == "2"

    def test_falls_back_to_first(self):
        candidates = [record("Oau", "1"), record("Abvz", "2")]
        assert select_record(candidates, "Aa").ppn == "1"

    def test_no_candidates(self):
        assert select_record([], "Aa") is None
