"""
Order Report Exporter

Builds an order report as a pandas DataFrame and renders it to:
- CSV
- Excel (openpyxl)
- PDF (reportlab table)

Reports written to disk by background jobs go through a FileLock so two
workers never write the same file at once.

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum
import io
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional
from xml.sax.saxutils import escape

import pandas as pd
from filelock import FileLock, Timeout
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ordering.core.config import get_settings
from ordering.core.errors import InvalidArgumentError
from ordering.database import as_utc, utcnow
from ordering.models import Order, OrderStatus

logger = logging.getLogger(__name__)


class ReportFormat(str, enum.Enum):
    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"


MEDIA_TYPES = {
    ReportFormat.CSV: "text/csv",
    ReportFormat.EXCEL: "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ReportFormat.PDF: "application/pdf",
}

EXTENSIONS = {
    ReportFormat.CSV: "csv",
    ReportFormat.EXCEL: "xlsx",
    ReportFormat.PDF: "pdf",
}


@dataclass
class ExportedReport:
    """A rendered report, ready to stream or write to disk."""
    filename: str
    media_type: str
    content: bytes
    row_count: int


async def fetch_orders(
    session: AsyncSession,
    status: Optional[OrderStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
) -> list[Order]:
    """Orders for a report, newest first."""
    query = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if status is not None:
        query = query.where(Order.status == status)
    if date_from is not None:
        query = query.where(Order.created_at >= date_from)
    if date_to is not None:
        query = query.where(Order.created_at <= date_to)
    result = await session.execute(query)
    return list(result.scalars().all())


class ReportExporter:
    """Order report rendering and file output."""

    ORDER_COLUMNS = [
        "order_number",
        "date",
        "customer_name",
        "customer_email",
        "customer_phone",
        "customer_type",
        "order_type",
        "status",
        "diet_partition",
        "items",
        "subtotal",
        "tax",
        "delivery_fee",
        "total_amount",
        "delivery_address",
    ]

    # Subset that fits a landscape A4 page
    PDF_COLUMNS = [
        "order_number",
        "date",
        "customer_name",
        "order_type",
        "status",
        "items",
        "total_amount",
    ]

    @staticmethod
    def _items_summary(items: Iterable[dict[str, Any]]) -> str:
        return "; ".join(f"{item.get('name', 'Unknown')} ({item.get('quantity', 0)})" for item in items or [])

    @classmethod
    def orders_frame(cls, orders: Iterable[Order]) -> pd.DataFrame:
        rows = []
        for order in orders:
            created = as_utc(order.created_at)
            rows.append({
                "order_number": order.order_number,
                "date": created.strftime("%Y-%m-%d %H:%M") if created else "",
                "customer_name": order.customer_name,
                "customer_email": order.customer_email or "N/A",
                "customer_phone": order.customer_phone or "N/A",
                "customer_type": order.customer_type.value,
                "order_type": order.order_type.value,
                "status": order.status.value,
                "diet_partition": order.diet_partition.value,
                "items": cls._items_summary(order.items),
                "subtotal": order.subtotal,
                "tax": order.tax,
                "delivery_fee": order.delivery_fee,
                "total_amount": order.total_amount,
                "delivery_address": order.delivery_address or "N/A",
            })
        return pd.DataFrame(rows, columns=cls.ORDER_COLUMNS)

    @classmethod
    def render(cls, df: pd.DataFrame, fmt: ReportFormat, title: str = "Orders Report") -> bytes:
        if fmt == ReportFormat.CSV:
            return df.to_csv(index=False).encode("utf-8")

        if fmt == ReportFormat.EXCEL:
            buffer = io.BytesIO()
            df.to_excel(buffer, index=False, engine="openpyxl", sheet_name="Orders")
            return buffer.getvalue()

        if fmt == ReportFormat.PDF:
            return cls._render_pdf(df, title)

        raise InvalidArgumentError(f"Unsupported report format '{fmt}'")

    @classmethod
    def _render_pdf(cls, df: pd.DataFrame, title: str) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=landscape(A4),
            leftMargin=12 * mm,
            rightMargin=12 * mm,
            topMargin=12 * mm,
            bottomMargin=12 * mm,
            title=title,
        )
        styles = getSampleStyleSheet()
        cell_style = styles["BodyText"]
        cell_style.fontSize = 8
        cell_style.leading = 10

        columns = [c for c in cls.PDF_COLUMNS if c in df.columns]
        header = [c.replace("_", " ").title() for c in columns]
        body = [
            [Paragraph(escape(str(value)), cell_style) for value in row]
            for row in df[columns].itertuples(index=False, name=None)
        ]

        table = Table([header] + body, repeatRows=1)
        table.setStyle(TableStyle([
            ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2f3e46")),
            ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
            ("FONTSIZE", (0, 0), (-1, 0), 9),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, colors.HexColor("#f1f3f5")]),
        ]))

        generated = utcnow().strftime("%Y-%m-%d %H:%M UTC")
        story = [
            Paragraph(escape(title), styles["Title"]),
            Paragraph(f"Generated {generated}, {len(df)} orders", styles["Normal"]),
            Spacer(1, 6 * mm),
            table,
        ]
        doc.build(story)
        return buffer.getvalue()

    @classmethod
    def export_orders(
        cls,
        orders: Iterable[Order],
        fmt: ReportFormat,
        generated_at: Optional[datetime] = None,
    ) -> ExportedReport:
        generated_at = generated_at or utcnow()
        df = cls.orders_frame(orders)
        content = cls.render(df, fmt, title=f"{get_settings().restaurant_name} - Orders")
        filename = f"orders-{generated_at:%Y-%m-%d}.{EXTENSIONS[fmt]}"
        logger.info(f"Rendered {fmt.value} report with {len(df)} orders")
        return ExportedReport(
            filename=filename,
            media_type=MEDIA_TYPES[fmt],
            content=content,
            row_count=len(df),
        )

    @classmethod
    def write_to_directory(cls, report: ExportedReport, directory: Optional[Path] = None) -> dict[str, Any]:
        """Write a report under the data directory with file locking."""
        settings = get_settings()
        directory = Path(directory or settings.data_directory)
        directory.mkdir(parents=True, exist_ok=True)

        path = directory / report.filename
        lock_path = directory / f"{report.filename}.lock"
        result = {
            "success": False,
            "message": "",
            "path": str(path),
            "rows": report.row_count,
        }

        try:
            with FileLock(str(lock_path), timeout=settings.export_lock_timeout):
                logger.debug(f"Lock acquired for {path}")
                path.write_bytes(report.content)
                result["success"] = True
                result["message"] = f"Wrote {report.row_count} orders to {path.name}"
                logger.info(result["message"])
            logger.debug(f"Lock released for {path}")

        except Timeout:
            result["message"] = f"Lock timeout ({settings.export_lock_timeout}s)"
            logger.error(f"Lock timeout writing {path}")

        return result
