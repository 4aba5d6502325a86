"""
Report exports: filtered item rows as CSV or XLSX, and photo bundles as ZIP.
"""
from __future__ import annotations

import csv
import io
import logging
import re
import zipfile
from concurrent.futures import ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date, datetime

import openpyxl
from openpyxl.utils import get_column_letter
from sqlalchemy.orm import Session, selectinload

from app.breakage import policy
from app.breakage.audit import record_event
from app.breakage.constants import OPERATION_BREAKAGE, STATUS_APPROVED, VALID_SUBMISSION_STATUSES
from app.breakage.errors import ValidationError
from app.breakage.models import User
from app.breakage.modules.products.models import Product
from app.breakage.modules.submissions.models import Item, Submission
from app.breakage.storage import Storage, StorageError, fetch_reference
from app.breakage.utils import day_bounds, normalize_text, parse_date, parse_int

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "Submission ID",
    "Date",
    "Time",
    "Status",
    "Type",
    "Product Code",
    "Product Name",
    "Capacity (ml)",
    "Quantity",
    "Employee ID",
    "User Name",
    "Reason",
    "Comments",
]


@dataclass(frozen=True)
class ReportFilters:
    date_from: date | None = None
    date_to: date | None = None
    status: str = STATUS_APPROVED  # "all" or a submission status
    user_id: int | None = None
    product_id: int | None = None

    @classmethod
    def from_args(cls, args) -> "ReportFilters":
        """Build filters from query-string args; invalid values raise ValidationError."""
        errors = []
        try:
            date_from = parse_date(args.get("date_from"))
            date_to = parse_date(args.get("date_to"))
        except ValueError:
            errors.append("Dates must be YYYY-MM-DD.")
            date_from = date_to = None
        status = normalize_text(args.get("status")) or STATUS_APPROVED
        if status != "all" and status not in VALID_SUBMISSION_STATUSES:
            errors.append("Invalid status filter.")
        try:
            user_id = parse_int(args.get("user_id"))
            product_id = parse_int(args.get("product_id"))
        except ValueError:
            errors.append("Invalid user or product filter.")
            user_id = product_id = None
        if date_from and date_to and date_from > date_to:
            errors.append("Start date must be on or before end date.")
        if errors:
            raise ValidationError(errors)
        return cls(date_from=date_from, date_to=date_to, status=status, user_id=user_id, product_id=product_id)

    def as_dict(self) -> dict:
        return {
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "status": self.status,
            "user_id": self.user_id,
            "product_id": self.product_id,
        }


@dataclass(frozen=True)
class ReportRow:
    submission: Submission
    item: Item

    @property
    def product(self) -> Product:
        return self.item.product

    def values(self) -> list:
        sub = self.submission
        item = self.item
        return [
            sub.id,
            sub.created_at.strftime("%Y-%m-%d"),
            sub.created_at.strftime("%H:%M:%S"),
            sub.status,
            "Breakage" if item.operation_type == OPERATION_BREAKAGE else "Exchange",
            item.product.code,
            item.product.name,
            item.product.capacity,
            item.quantity,
            sub.owner.employee_id,
            sub.owner.name,
            item.reason,
            sub.comments or "",
        ]


@dataclass
class PhotoArchive:
    data: bytes
    requested: int
    completed: int
    failed: list[str] = field(default_factory=list)


def query_report_rows(s: Session, actor: User, filters: ReportFilters) -> list[ReportRow]:
    """One row per item, ordered by submission time then item position."""
    policy.authorize(actor, policy.EXPORT, policy.REPORT)

    q = s.query(Submission).options(selectinload(Submission.items).selectinload(Item.product))
    lo, hi = day_bounds(filters.date_from, filters.date_to)
    if lo:
        q = q.filter(Submission.created_at >= lo)
    if hi:
        q = q.filter(Submission.created_at < hi)
    if filters.status != "all":
        q = q.filter(Submission.status == filters.status)
    if filters.user_id is not None:
        q = q.filter(Submission.user_id == filters.user_id)
    if filters.product_id is not None:
        q = q.filter(Submission.items.any(Item.product_id == filters.product_id))

    rows: list[ReportRow] = []
    for sub in q.order_by(Submission.created_at.asc(), Submission.id.asc()).all():
        for item in sub.items:
            if filters.product_id is not None and item.product_id != filters.product_id:
                continue
            rows.append(ReportRow(submission=sub, item=item))
    return rows


def rows_for_submission(submission: Submission) -> list[ReportRow]:
    return [ReportRow(submission=submission, item=item) for item in submission.items]


def render_csv(rows: list[ReportRow]) -> bytes:
    out = io.StringIO()
    w = csv.writer(out)
    w.writerow(REPORT_COLUMNS)
    for row in rows:
        w.writerow(row.values())
    return out.getvalue().encode("utf-8")


def render_xlsx(rows: list[ReportRow]) -> bytes:
    wb = openpyxl.Workbook()
    ws = wb.active
    ws.title = "Report"
    ws.append(REPORT_COLUMNS)
    widths = [len(h) for h in REPORT_COLUMNS]
    for row in rows:
        values = row.values()
        ws.append(values)
        widths = [max(w, len(str(v))) for w, v in zip(widths, values)]
    for idx, width in enumerate(widths, start=1):
        ws.column_dimensions[get_column_letter(idx)].width = min(width + 2, 60)
    out = io.BytesIO()
    wb.save(out)
    return out.getvalue()


_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe(part: str) -> str:
    return _SAFE_NAME_RE.sub("_", part).strip("_") or "x"


def _extension(ref: str) -> str:
    tail = ref.split("?", 1)[0].rsplit("/", 1)[-1]
    if "." in tail:
        ext = tail.rsplit(".", 1)[-1].lower()
        if ext.isalnum() and len(ext) <= 5:
            return ext
    return "jpg"


def photo_entries(rows: list[ReportRow]) -> list[tuple[str, str]]:
    """
    Deterministic (archive name, photo reference) pairs:
    Item<item-index>_<product-code>_<photo-index>.<ext>, indexes 1-based in row order.
    """
    entries = []
    for item_idx, row in enumerate(rows, start=1):
        code = _safe(row.product.code)
        for photo_idx, ref in enumerate(row.item.photos or [], start=1):
            entries.append((f"Item{item_idx}_{code}_{photo_idx}.{_extension(ref)}", ref))
    return entries


def build_photo_archive(
    storage: Storage,
    rows: list[ReportRow],
    *,
    workers: int = 4,
    timeout: float | None = 60.0,
) -> PhotoArchive:
    """
    Fetch every referenced photo concurrently and bundle them into a ZIP.

    A failed fetch only drops that file. When `timeout` elapses we stop waiting for
    the remaining fetches (they are not cancelled once running) and count them as failed.
    """
    entries = photo_entries(rows)
    fetched: dict[str, bytes] = {}
    failed: list[str] = []

    if entries:
        pool = ThreadPoolExecutor(max_workers=max(1, min(workers, len(entries))))
        futures = {pool.submit(fetch_reference, storage, ref): name for name, ref in entries}
        try:
            for fut in as_completed(futures, timeout=timeout):
                name = futures[fut]
                try:
                    fetched[name] = fut.result()
                except StorageError as e:
                    logger.warning("Photo export: skipping %s: %s", name, e)
                    failed.append(name)
                except Exception:
                    logger.exception("Photo export: unexpected error fetching %s", name)
                    failed.append(name)
        except FuturesTimeout:
            pending = [name for fut, name in futures.items() if not fut.done()]
            logger.warning("Photo export: gave up waiting for %s photo(s) after %ss", len(pending), timeout)
            failed.extend(pending)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    out = io.BytesIO()
    with zipfile.ZipFile(out, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for name, _ref in entries:
            if name in fetched:
                zf.writestr(name, fetched[name])

    return PhotoArchive(
        data=out.getvalue(),
        requested=len(entries),
        completed=len(fetched),
        failed=sorted(failed),
    )


def export_filename(kind: str, ext: str, today: date | None = None) -> str:
    today = today or date.today()
    return f"{kind}_{today.isoformat()}.{ext}"


def submission_archive_filename(submission: Submission) -> str:
    return f"{_safe(submission.owner.name)}_{submission.created_at.strftime('%Y-%m-%d')}.zip"


def record_export(
    s: Session,
    actor: User,
    *,
    fmt: str,
    filters: ReportFilters | None = None,
    row_count: int,
    archive: PhotoArchive | None = None,
    submission_id: int | None = None,
) -> None:
    details: dict = {"format": fmt, "rows": row_count, "generated_at": datetime.utcnow().isoformat()}
    if filters is not None:
        details["filters"] = filters.as_dict()
    if archive is not None:
        details.update({"photos_requested": archive.requested, "photos_included": archive.completed})
    record_event(
        s,
        actor=actor,
        action=f"report.export_{fmt}" if submission_id is None else "submission.download_photos",
        target_type="Report" if submission_id is None else "Submission",
        target_id=submission_id if submission_id is not None else fmt,
        details=details,
    )
