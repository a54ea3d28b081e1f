from __future__ import annotations

import csv
import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import PurePath
from typing import Any

from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from leadledger import audit, events
from leadledger.core.config import get_settings
from leadledger.crm.models import CRMLead
from leadledger.crm.repositories import LeadRepository
from leadledger.crm.schemas import BulkIngestResult, LeadCreate, RejectedRow
from leadledger.crm.service import LeadService, storage_failure
from leadledger.crm.validation import cell_text, normalize_phone
from leadledger.errors import CRMError, ParseError, ValidationError
from leadledger.metrics import observe_bulk_ingest_rows
from leadledger.otel import get_tracer, mark_span_failed
from leadledger.platform.security.context import ActorUser


logger = logging.getLogger("leadledger.crm")
tracer = get_tracer("leadledger.crm")

BULK_SOURCE = "excel-upload"

_XLSX_SUFFIXES = {".xlsx", ".xlsm"}
_CSV_SUFFIXES = {".csv", ".txt"}
_CSV_CONTENT_TYPES = {"text/csv", "application/csv", "text/plain"}
_ZIP_MAGIC = b"PK\x03\x04"

# Header lookup is case-insensitive; these are the spellings seen in real sheets.
_HEADER_ALIASES: dict[str, tuple[str, ...]] = {
    "name": ("name", "full name", "lead name", "student name"),
    "phone": ("phone", "phone number", "mobile", "contact", "contact number"),
    "course": ("course", "program", "programme"),
    "city": ("city",),
    "source": ("source",),
    "remarks": ("remarks", "notes", "comment"),
}


def _cell_json(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _clean_row(raw_row: dict[Any, Any]) -> dict[str, Any]:
    row: dict[str, Any] = {}
    for key, value in raw_row.items():
        if key is None:
            # csv.DictReader puts overflow cells under a None key.
            continue
        header = str(key).strip()
        if not header:
            continue
        row[header] = value.strip() if isinstance(value, str) else _cell_json(value)
    return row


def _is_blank(row: dict[str, Any]) -> bool:
    return all(cell_text(value) == "" for value in row.values())


def _parse_csv(content: bytes) -> list[dict[str, Any]]:
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ParseError("file is not valid UTF-8 text") from exc

    reader = csv.DictReader(io.StringIO(text))
    try:
        if not reader.fieldnames:
            raise ParseError("file has no header row")
        rows = [_clean_row(raw_row) for raw_row in reader]
    except csv.Error as exc:
        raise ParseError(f"malformed CSV: {exc}") from exc
    return [row for row in rows if not _is_blank(row)]


def _parse_xlsx(content: bytes) -> list[dict[str, Any]]:
    try:
        workbook = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError, ValueError) as exc:
        raise ParseError("file is not a readable spreadsheet") from exc

    try:
        if not workbook.worksheets:
            raise ParseError("spreadsheet has no worksheets")
        values = workbook.worksheets[0].iter_rows(values_only=True)
        header = next(values, None)
        if header is None or all(cell is None for cell in header):
            raise ParseError("spreadsheet has no header row")
        headers = [cell_text(cell) for cell in header]
        rows: list[dict[str, Any]] = []
        for raw_values in values:
            row = _clean_row(dict(zip(headers, raw_values)))
            if row and not _is_blank(row):
                rows.append(row)
        return rows
    finally:
        workbook.close()


def parse_tabular(content: bytes, filename: str | None = None, content_type: str | None = None) -> list[dict[str, Any]]:
    """Read the first sheet of an XLSX workbook, or a CSV file, into header-keyed rows.

    Blank rows are dropped. Anything that cannot be read as a table raises ParseError.
    """

    if not content:
        raise ParseError("uploaded file is empty")

    suffix = PurePath(filename).suffix.lower() if filename else ""
    media_type = (content_type or "").split(";")[0].strip().lower()

    if suffix in _XLSX_SUFFIXES or content.startswith(_ZIP_MAGIC):
        return _parse_xlsx(content)
    if suffix in _CSV_SUFFIXES or media_type in _CSV_CONTENT_TYPES or not suffix:
        return _parse_csv(content)
    raise ParseError(f"unsupported file type '{suffix}'", details={"supported": [".xlsx", ".csv"]})


def lookup_field(row: dict[str, Any], field_name: str) -> Any:
    aliases = _HEADER_ALIASES.get(field_name, (field_name,))
    by_header = {key.strip().lower(): value for key, value in row.items()}
    for alias in aliases:
        if alias in by_header:
            return by_header[alias]
    return None


@dataclass
class ReconciledRow:
    row_number: int
    raw: dict[str, Any]
    payload: LeadCreate
    phone: str


@dataclass
class Reconciliation:
    accepted: list[ReconciledRow] = field(default_factory=list)
    duplicates: list[ReconciledRow] = field(default_factory=list)
    rejected: list[RejectedRow] = field(default_factory=list)


class BulkIngestionReconciler:
    """Splits parsed rows into accepted, duplicate and rejected.

    Duplicates are judged on the normalized phone against every stored lead and
    against earlier rows of the same batch.
    """

    def __init__(self, lead_repository: LeadRepository | None = None) -> None:
        self.lead_repository = lead_repository or LeadRepository()

    def reconcile(self, session: Session, rows: list[dict[str, Any]]) -> Reconciliation:
        result = Reconciliation()
        candidates: list[ReconciledRow] = []

        # Row 1 is the header.
        for row_number, raw in enumerate(rows, start=2):
            name = cell_text(lookup_field(raw, "name"))
            phone_value = lookup_field(raw, "phone")
            if not name:
                result.rejected.append(RejectedRow(row_number=row_number, row=raw, reason="name is required"))
                continue
            phone = normalize_phone(phone_value)
            if not phone:
                result.rejected.append(RejectedRow(row_number=row_number, row=raw, reason="phone is required"))
                continue

            payload = LeadCreate(
                name=name,
                phone=phone,
                course=cell_text(lookup_field(raw, "course")),
                city=cell_text(lookup_field(raw, "city")) or None,
                source=cell_text(lookup_field(raw, "source")) or BULK_SOURCE,
                remarks=cell_text(lookup_field(raw, "remarks")) or None,
            )
            candidates.append(ReconciledRow(row_number=row_number, raw=raw, payload=payload, phone=phone))

        stored = self.lead_repository.existing_phones(session, (item.phone for item in candidates))
        seen: set[str] = set()
        for item in candidates:
            if item.phone in stored or item.phone in seen:
                result.duplicates.append(item)
                continue
            seen.add(item.phone)
            result.accepted.append(item)
        return result


class BulkIngestionService:
    entity_type = "crm.lead"

    def __init__(
        self,
        lead_service: LeadService | None = None,
        reconciler: BulkIngestionReconciler | None = None,
    ) -> None:
        self.lead_service = lead_service or LeadService()
        self.reconciler = reconciler or BulkIngestionReconciler(self.lead_service.repository)

    def ingest(
        self,
        session: Session,
        actor_user: ActorUser,
        content: bytes,
        *,
        filename: str | None = None,
        content_type: str | None = None,
        assigned_to: str | None = None,
        dry_run: bool = False,
    ) -> BulkIngestResult:
        with tracer.start_as_current_span("crm.leads.bulk_ingest") as span:
            span.set_attribute("user_id", actor_user.user_id)
            span.set_attribute("dry_run", dry_run)
            try:
                result = self._ingest(
                    session,
                    actor_user,
                    content,
                    filename=filename,
                    content_type=content_type,
                    assigned_to=assigned_to,
                    dry_run=dry_run,
                )
            except CRMError as exc:
                mark_span_failed(span, exc)
                raise
            span.set_attribute("inserted_count", result.inserted_count)
            span.set_attribute("failed_count", result.failed_count)
        return result

    def _ingest(
        self,
        session: Session,
        actor_user: ActorUser,
        content: bytes,
        *,
        filename: str | None,
        content_type: str | None,
        assigned_to: str | None,
        dry_run: bool,
    ) -> BulkIngestResult:
        owner_id = self.lead_service.resolve_owner(session, actor_user, assigned_to)
        rows = parse_tabular(content, filename, content_type)
        max_rows = get_settings().bulk_upload_max_rows
        if len(rows) > max_rows:
            raise ValidationError(
                f"upload has {len(rows)} rows; the limit is {max_rows}",
                details={"max_rows": max_rows},
            )

        reconciliation = self.reconciler.reconcile(session, rows)
        result = BulkIngestResult(
            dry_run=dry_run,
            total_rows=len(rows),
            skipped_duplicate_count=len(reconciliation.duplicates),
            rejected_rows=list(reconciliation.rejected),
        )
        prepared = self._prepare_accepted(actor_user, owner_id, reconciliation, result)
        result.accepted_count = len(prepared)

        if not dry_run:
            self._insert_prepared(session, actor_user, owner_id, prepared, result)
        result.failed_count = len(result.rejected_rows)
        result.rejected_rows.sort(key=lambda item: item.row_number)

        observe_bulk_ingest_rows("inserted", result.inserted_count)
        observe_bulk_ingest_rows("duplicate", result.skipped_duplicate_count)
        observe_bulk_ingest_rows("rejected", result.failed_count)
        logger.info(
            "leads.bulk_ingested",
            extra={
                "user_id": actor_user.user_id,
                "inserted_count": result.inserted_count,
                "skipped_count": result.skipped_duplicate_count,
                "failed_count": result.failed_count,
                "status": "dry_run" if dry_run else "applied",
            },
        )
        return result

    def _prepare_accepted(
        self,
        actor_user: ActorUser,
        owner_id: str,
        reconciliation: Reconciliation,
        result: BulkIngestResult,
    ) -> list[tuple[ReconciledRow, CRMLead]]:
        prepared: list[tuple[ReconciledRow, CRMLead]] = []
        for item in reconciliation.accepted:
            try:
                lead = self.lead_service.build_lead(
                    actor_user,
                    item.payload,
                    assigned_to=owner_id,
                    default_source=BULK_SOURCE,
                )
            except ValidationError as exc:
                result.rejected_rows.append(RejectedRow(row_number=item.row_number, row=item.raw, reason=exc.message))
                continue
            prepared.append((item, lead))
        return prepared

    def _insert_prepared(
        self,
        session: Session,
        actor_user: ActorUser,
        owner_id: str,
        prepared: list[tuple[ReconciledRow, CRMLead]],
        result: BulkIngestResult,
    ) -> None:
        inserted_ids: list[str] = []
        for item, lead in prepared:
            try:
                with session.begin_nested():
                    self.lead_service.repository.add(session, lead)
            except SQLAlchemyError as exc:
                logger.warning(
                    "leads.bulk_row_failed",
                    extra={"user_id": actor_user.user_id, "error": type(exc).__name__},
                )
                result.rejected_rows.append(
                    RejectedRow(row_number=item.row_number, row=item.raw, reason="row could not be stored")
                )
                continue
            inserted_ids.append(str(lead.id))

        try:
            session.commit()
        except SQLAlchemyError as exc:
            raise storage_failure(session, "lead.bulk_ingest", exc) from exc
        result.inserted_count = len(inserted_ids)

        if inserted_ids:
            audit.record(
                actor_user_id=actor_user.user_id,
                entity_type=self.entity_type,
                entity_id="*",
                action="bulk_create",
                before=None,
                after={"assigned_to": owner_id, "lead_ids": inserted_ids},
                correlation_id=actor_user.correlation_id,
            )
            events.publish(
                events.build_envelope(
                    "crm.leads.bulk_ingested",
                    actor_user.user_id,
                    {"assigned_to": owner_id, "inserted_count": len(inserted_ids)},
                )
            )
