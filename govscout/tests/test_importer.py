"""Tests for the JSON opportunity import pipeline."""
from __future__ import annotations

import io
import json
from datetime import UTC, date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from govscout.agencies import AgencyResolver
from govscout.importer import (
    SYNC_TYPE,
    DocumentError,
    ImportSourceError,
    convert_document,
    import_directory,
    load_documents,
    notice_key,
    run_import,
)
from govscout.models import SYNC_FAILED, SYNC_SUCCESS, Agency, Base, Opportunity, SyncLog
from govscout.store import RecordStore

# ---------------------------------------------------------------------------
# Fixtures: in-memory SQLite database
# ---------------------------------------------------------------------------


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:", connect_args={"check_same_thread": False})
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    sess = factory()
    try:
        yield sess
    finally:
        sess.close()


@pytest.fixture()
def store(session) -> RecordStore:
    return RecordStore(session)


def _doc(notice_id: str, **overrides) -> dict:
    doc = {
        "noticeId": notice_id,
        "title": f"Cloud modernization {notice_id}",
        "solicitationNumber": f"SOL-{notice_id}",
        "department": "Department of Defense",
        "subTier": "Defense Information Systems Agency",
        "type": "Solicitation",
        "postedDate": "2024-03-01",
        "responseDeadLine": "2024-03-15",
        "naicsCode": "541512",
        "active": "Yes",
        "uiLink": f"https://sam.gov/opp/{notice_id}/view",
        "description": "Migrate legacy workloads",
    }
    doc.update(overrides)
    return doc


def _payload(*docs) -> bytes:
    return json.dumps(list(docs)).encode()


def _sync_logs(session) -> list[SyncLog]:
    return list(session.execute(select(SyncLog).order_by(SyncLog.id)).scalars().all())


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestConvertDocument:
    def test_maps_core_fields(self, store):
        opp = convert_document(_doc("N-1"), AgencyResolver(store))
        assert opp.notice_id == "N-1"
        assert opp.solicitation_number == "SOL-N-1"
        assert opp.notice_type == "Solicitation"
        assert opp.posted_date == date(2024, 3, 1)
        assert opp.naics_code == "541512"
        assert opp.is_active is True
        assert opp.archive_type is None
        assert opp.agency.name == "Department of Defense"
        assert opp.agency.tier == "Defense Information Systems Agency"

    def test_date_only_deadline_is_utc_midnight(self, store):
        opp = convert_document(_doc("N-1"), AgencyResolver(store))
        assert opp.response_deadline == datetime(2024, 3, 15, 0, 0, tzinfo=UTC)

    def test_offset_deadline_converted_to_utc(self, store):
        opp = convert_document(_doc("N-1", responseDeadLine="2024-03-15T17:00:00-04:00"), AgencyResolver(store))
        assert opp.response_deadline == datetime(2024, 3, 15, 21, 0, tzinfo=UTC)

    def test_country_defaults_to_us(self, store):
        doc = _doc("N-1", placeOfPerformance={"city": "Arlington", "state": "VA", "zip": "22202"})
        opp = convert_document(doc, AgencyResolver(store))
        assert opp.place_of_performance_city == "Arlington"
        assert opp.place_of_performance_state == "VA"
        assert opp.place_of_performance_country == "US"

    def test_archive_and_inactive_flags(self, store):
        opp = convert_document(_doc("N-1", active="No", archive="Yes"), AgencyResolver(store))
        assert opp.is_active is False
        assert opp.archive_type == "archived"

    def test_missing_type_defaults_to_unknown(self, store):
        doc = _doc("N-1")
        del doc["type"]
        assert convert_document(doc, AgencyResolver(store)).notice_type == "Unknown"

    def test_solicitation_number_used_as_key(self, store):
        doc = _doc("N-1")
        del doc["noticeId"]
        assert notice_key(doc) == "SOL-N-1"
        assert convert_document(doc, AgencyResolver(store)).notice_id == "SOL-N-1"

    def test_point_of_contact(self, store):
        doc = _doc("N-1", pointOfContact=[{"fullName": "Pat Doe", "email": "pat@agency.gov"}])
        assert convert_document(doc, AgencyResolver(store)).point_of_contact == "Pat Doe <pat@agency.gov>"

    def test_empty_document_rejected(self, store):
        with pytest.raises(DocumentError):
            convert_document({}, AgencyResolver(store))

    def test_missing_title_rejected(self, store):
        with pytest.raises(DocumentError, match="missing title"):
            convert_document(_doc("N-1", title="  "), AgencyResolver(store))

    def test_bad_date_rejected(self, store):
        with pytest.raises(DocumentError, match="invalid date"):
            convert_document(_doc("N-1", postedDate="March 1st"), AgencyResolver(store))

    def test_no_department_leaves_agency_unset(self, store):
        opp = convert_document(_doc("N-1", department=""), AgencyResolver(store))
        assert opp.agency is None


# ---------------------------------------------------------------------------
# Source loading
# ---------------------------------------------------------------------------


class TestLoadDocuments:
    def test_bytes_and_stream(self):
        assert load_documents(_payload({"noticeId": "A"})) == [{"noticeId": "A"}]
        assert load_documents(io.StringIO('[{"noticeId": "B"}]')) == [{"noticeId": "B"}]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ImportSourceError, match="not found"):
            load_documents(tmp_path / "missing.json")

    def test_invalid_json(self):
        with pytest.raises(ImportSourceError, match="Invalid JSON"):
            load_documents(b"[{not json")

    def test_top_level_must_be_array(self):
        with pytest.raises(ImportSourceError, match="JSON array"):
            load_documents(b'{"noticeId": "A"}')


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestRunImport:
    def test_skips_invalid_document(self, session, store):
        result = run_import(_payload(_doc("N-1"), {}, _doc("N-2")), store)
        assert result.succeeded == 2
        assert result.skipped == 1
        assert len(result.errors) == 1
        assert len(session.execute(select(Opportunity)).scalars().all()) == 2

    def test_reimport_is_idempotent(self, session, store):
        payload = _payload(_doc("N-1"), _doc("N-2"))
        run_import(payload, store)
        again = run_import(payload, store)
        assert again.succeeded == 0
        assert again.skipped == 2
        assert len(session.execute(select(Opportunity)).scalars().all()) == 2

    def test_duplicate_within_source(self, session, store):
        result = run_import(_payload(_doc("N-1"), _doc("N-1")), store)
        assert result.succeeded == 1
        assert result.skipped == 1

    def test_shared_department_creates_one_agency(self, session, store):
        run_import(_payload(_doc("N-1"), _doc("N-2"), _doc("N-3", department="department of defense")), store)
        agencies = session.execute(select(Agency)).scalars().all()
        assert len(agencies) == 1
        assert agencies[0].abbreviation == "DOD"

    def test_small_chunks(self, session, store):
        docs = [_doc(f"N-{i}") for i in range(7)]
        result = run_import(_payload(*docs), store, chunk_size=3)
        assert result.succeeded == 7
        assert len(session.execute(select(Opportunity)).scalars().all()) == 7

    def test_records_success_sync_log(self, session, store):
        run_import(_payload(_doc("N-1"), {}), store)
        logs = _sync_logs(session)
        assert len(logs) == 1
        assert logs[0].sync_type == SYNC_TYPE
        assert logs[0].status == SYNC_SUCCESS
        assert logs[0].records_processed == 1
        assert logs[0].error_count == 1

    def test_missing_file_is_fatal(self, session, store, tmp_path):
        with pytest.raises(ImportSourceError):
            run_import(tmp_path / "nope.json", store)
        assert session.execute(select(Opportunity)).scalars().all() == []
        logs = _sync_logs(session)
        assert logs[0].status == SYNC_FAILED
        assert logs[0].error_log.startswith("Error: ")

    def test_malformed_json_is_fatal(self, session, store):
        with pytest.raises(ImportSourceError):
            run_import(b"not json at all", store)
        assert session.execute(select(Opportunity)).scalars().all() == []


class TestImportDirectory:
    def test_imports_every_file_and_skips_broken(self, session, store, tmp_path):
        (tmp_path / "2024-03-01.json").write_bytes(_payload(_doc("N-1"), _doc("N-2")))
        nested = tmp_path / "march"
        nested.mkdir()
        (nested / "2024-03-02.json").write_bytes(_payload(_doc("N-2"), _doc("N-3")))
        (tmp_path / "broken.json").write_text("[{", encoding="utf-8")

        result = import_directory(tmp_path, store)
        assert result.succeeded == 3
        assert result.skipped == 1
        assert any("broken.json" in e for e in result.errors)
        assert _sync_logs(session)[-1].status == SYNC_SUCCESS

    def test_missing_directory(self, store, tmp_path):
        with pytest.raises(ImportSourceError, match="does not exist"):
            import_directory(tmp_path / "absent", store)
