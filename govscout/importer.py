"""Import cached SAM.gov opportunity documents from JSON files.

Each source holds a JSON array of flat opportunity objects as published by the
SAM.gov opportunities API (``noticeId``, ``title``, ``department``,
``responseDeadLine`` ...). Documents are converted one at a time; a document
that cannot be converted is logged and skipped, while an unreadable source
aborts the run before anything is written.
"""
from __future__ import annotations

import json
import logging
from datetime import UTC, date, datetime
from pathlib import Path
from typing import IO, Any, Union

from govscout.agencies import AgencyResolver
from govscout.models import SYNC_FAILED, SYNC_SUCCESS, ImportResult, Opportunity, SyncLog
from govscout.store import RecordStore
from govscout.utils import utc_now

log = logging.getLogger(__name__)

SYNC_TYPE = "SAM_GOV_IMPORT"
DEFAULT_CHUNK_SIZE = 50

ImportSource = Union[str, Path, bytes, IO[bytes], IO[str]]


class ImportSourceError(Exception):
    """The import source is missing, unreadable, or not a JSON array."""


class DocumentError(ValueError):
    """A single document cannot be converted to an opportunity."""


def _s(value: object) -> str:
    """Safely coerce a JSON value to a stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _opt(value: object, max_len: int | None = None) -> str | None:
    text = _s(value)
    if not text:
        return None
    return text[:max_len] if max_len else text


def _yes(value: object) -> bool:
    return _s(value).casefold() == "yes"


def _parse_date(value: object) -> date | None:
    text = _s(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text).date()
    except ValueError as exc:
        raise DocumentError(f"invalid date {text!r}") from exc


def _parse_instant(value: object) -> datetime | None:
    """Parse a date or datetime; date-only values become UTC midnight."""
    text = _s(value)
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise DocumentError(f"invalid deadline {text!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _point_of_contact(value: object) -> str | None:
    if not isinstance(value, list) or not value or not isinstance(value[0], dict):
        return None
    first = value[0]
    name = _s(first.get("fullName"))
    email = _s(first.get("email"))
    contact = f"{name} <{email}>" if name and email else (name or email)
    return contact[:255] or None


def notice_key(doc: dict[str, Any]) -> str:
    """Natural key of a document: its notice id, else its solicitation number."""
    return _s(doc.get("noticeId")) or _s(doc.get("solicitationNumber"))


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


def convert_document(doc: dict[str, Any], resolver: AgencyResolver) -> Opportunity:
    """Convert one raw document to an unsaved :class:`Opportunity`.

    May create an agency as a side effect. Raises :class:`DocumentError`.
    """
    key = notice_key(doc)
    if not key:
        raise DocumentError("missing noticeId and solicitationNumber")
    title = _s(doc.get("title"))
    if not title:
        raise DocumentError(f"{key}: missing title")

    opportunity = Opportunity(
        notice_id=key,
        title=title,
        solicitation_number=_opt(doc.get("solicitationNumber"), 255),
        notice_type=_opt(doc.get("type"), 50) or "Unknown",
        description=_opt(doc.get("description")),
        posted_date=_parse_date(doc.get("postedDate")),
        response_deadline=_parse_instant(doc.get("responseDeadLine")),
        naics_code=_opt(doc.get("naicsCode"), 6),
        set_aside=_opt(doc.get("setAside"), 100),
        classification_code=_opt(doc.get("classificationCode"), 10),
        office_name=_opt(doc.get("office"), 500),
        ui_link=_opt(doc.get("uiLink")),
        additional_info_link=_opt(doc.get("additionalInfoLink")),
        point_of_contact=_point_of_contact(doc.get("pointOfContact")),
        archive_type="archived" if _yes(doc.get("archive")) else None,
        is_active=_yes(doc.get("active")),
    )

    pop = doc.get("placeOfPerformance")
    if isinstance(pop, dict):
        opportunity.place_of_performance_city = _opt(pop.get("city"), 100)
        opportunity.place_of_performance_state = _opt(pop.get("state"), 2)
        opportunity.place_of_performance_zip = _opt(pop.get("zip"), 10)
        opportunity.place_of_performance_country = _opt(pop.get("country"), 2) or "US"

    agency = resolver.resolve(_s(doc.get("department")), _opt(doc.get("subTier")))
    if agency is not None:
        opportunity.agency = agency
    return opportunity


# ---------------------------------------------------------------------------
# Source loading
# ---------------------------------------------------------------------------


def load_documents(source: ImportSource) -> list[Any]:
    """Read and parse the whole source. Raises :class:`ImportSourceError`."""
    label = str(source) if isinstance(source, (str, Path)) else "<stream>"
    try:
        if isinstance(source, (str, Path)):
            path = Path(source)
            if not path.is_file():
                raise ImportSourceError(f"Import source not found: {path}")
            raw: str | bytes = path.read_bytes()
        elif isinstance(source, (bytes, bytearray)):
            raw = bytes(source)
        else:
            raw = source.read()
        data = json.loads(raw)
    except ImportSourceError:
        raise
    except OSError as exc:
        raise ImportSourceError(f"Cannot read import source {label}: {exc}") from exc
    except ValueError as exc:
        raise ImportSourceError(f"Invalid JSON in {label}: {exc}") from exc

    if not isinstance(data, list):
        raise ImportSourceError(f"Import source {label} must contain a JSON array")
    return data


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


def import_documents(
    documents: list[Any],
    store: RecordStore,
    resolver: AgencyResolver,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    seen: set[str] | None = None,
) -> ImportResult:
    """Convert and persist *documents* in chunks of *chunk_size*."""
    seen = set() if seen is None else seen
    result = ImportResult()
    pending: list[Opportunity] = []

    def flush() -> None:
        saved, errors = store.save_all(pending)
        result.succeeded += saved
        result.skipped += len(pending) - saved
        result.errors.extend(errors)
        if saved:
            log.info("Saved %d opportunities", saved)
        pending.clear()

    for index, doc in enumerate(documents):
        if not isinstance(doc, dict):
            result.skipped += 1
            result.errors.append(f"document {index}: not a JSON object")
            continue

        key = notice_key(doc)
        if key and (key in seen or store.exists_by_notice_id(key)):
            log.debug("Skipping duplicate opportunity: %s", key)
            result.skipped += 1
            continue

        try:
            opportunity = convert_document(doc, resolver)
        except DocumentError as exc:
            log.warning("Skipping document %d: %s", index, exc)
            result.skipped += 1
            result.errors.append(f"document {index}: {exc}")
            continue
        except Exception as exc:
            log.exception("Failed to process opportunity %s", key or index)
            result.skipped += 1
            result.errors.append(f"document {index}: {exc}")
            continue

        seen.add(key)
        pending.append(opportunity)
        if len(pending) >= chunk_size:
            flush()

    flush()
    return result


def _record_run(store: RecordStore, started_at: datetime, result: ImportResult, fatal: str = "") -> None:
    store.add_sync_log(SyncLog(
        sync_type=SYNC_TYPE,
        status=SYNC_FAILED if fatal else SYNC_SUCCESS,
        records_processed=result.succeeded,
        error_count=len(result.errors) + (1 if fatal else 0),
        error_log="\n".join([*result.errors, *([f"Error: {fatal}"] if fatal else [])]),
        started_at=started_at,
        completed_at=utc_now(),
    ))


def run_import(
    source: ImportSource,
    store: RecordStore,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    resolver: AgencyResolver | None = None,
) -> ImportResult:
    """Import one JSON array source.

    Missing or malformed sources raise :class:`ImportSourceError` before any
    opportunity is written; the failure is still recorded as a sync log.
    """
    started_at = utc_now()
    try:
        documents = load_documents(source)
    except ImportSourceError as exc:
        log.error("Import aborted: %s", exc)
        _record_run(store, started_at, ImportResult(), fatal=str(exc))
        raise

    log.info("Importing %d opportunity documents", len(documents))
    result = import_documents(documents, store, resolver or AgencyResolver(store), chunk_size)
    _record_run(store, started_at, result)
    log.info("Import finished: %d succeeded, %d skipped", result.succeeded, result.skipped)
    return result


def import_directory(
    directory: str | Path,
    store: RecordStore,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ImportResult:
    """Import every ``*.json`` file below *directory*.

    A file that cannot be parsed is reported and skipped; a missing directory
    is fatal.
    """
    started_at = utc_now()
    root = Path(directory)
    if not root.is_dir():
        message = f"Data directory does not exist: {root}"
        _record_run(store, started_at, ImportResult(), fatal=message)
        raise ImportSourceError(message)

    files = sorted(p for p in root.rglob("*.json") if p.is_file())
    log.info("Found %d JSON files in %s", len(files), root)

    resolver = AgencyResolver(store)
    seen: set[str] = set()
    total = ImportResult()
    for path in files:
        try:
            documents = load_documents(path)
        except ImportSourceError as exc:
            log.error("Failed to parse JSON file %s: %s", path, exc)
            total.errors.append(str(exc))
            continue
        log.info("Loaded %d opportunities from %s", len(documents), path.name)
        total = total.merge(import_documents(documents, store, resolver, chunk_size, seen))

    _record_run(store, started_at, total)
    log.info("Directory import finished: %d succeeded, %d skipped", total.succeeded, total.skipped)
    return total
