"""Invoice PDF rendering with reportlab."""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_RIGHT
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from app.logging_config import get_logger
from app.services.extraction_service import NARROW_NBSP, NBSP, format_eur
from app.services.session_store import DEFAULT_TAX_RATE_PCT, InvoiceFields

logger = get_logger("invoice_service")

DEFAULT_PREFIX = "FAC-"
ACCENT = colors.HexColor("#2563eb")
MUTED = colors.HexColor("#666666")
HEADER_BG = colors.HexColor("#f3f4f6")
FOOTER_TEXT = "Facture générée automatiquement par Bot WhatsApp"


@dataclass
class RenderedInvoice:
    document_path: Path
    invoice_number: str
    subtotal: float
    tax_amount: float
    total_with_tax: float
    tax_rate_pct: float
    issued_at: datetime


def new_invoice_number(prefix: Optional[str] = None, now: Optional[datetime] = None) -> str:
    """<prefix><YYYYMMDD>-<6 hex>; random suffix so two identical orders never collide."""
    now = now or datetime.now(timezone.utc)
    return f"{prefix or DEFAULT_PREFIX}{now:%Y%m%d}-{uuid.uuid4().hex[:6].upper()}"


def _pdf_amount(value: float) -> str:
    # Standard PDF fonts have no narrow no-break space glyph.
    return format_eur(value).replace(NARROW_NBSP, " ").replace(NBSP, " ")


def _styles() -> dict:
    base = getSampleStyleSheet()
    return {
        "company": ParagraphStyle("Company", parent=base["Normal"], fontName="Helvetica-Bold",
                                  fontSize=20, leading=24, textColor=ACCENT),
        "muted": ParagraphStyle("Muted", parent=base["Normal"], fontSize=9, leading=12, textColor=MUTED),
        "title": ParagraphStyle("Title", parent=base["Normal"], fontName="Helvetica-Bold",
                                fontSize=24, leading=28, alignment=TA_RIGHT),
        "meta": ParagraphStyle("Meta", parent=base["Normal"], fontSize=10, leading=13,
                               textColor=MUTED, alignment=TA_RIGHT),
        "label": ParagraphStyle("Label", parent=base["Normal"], fontSize=10, leading=13),
        "client": ParagraphStyle("Client", parent=base["Normal"], fontName="Helvetica-Bold",
                                 fontSize=13, leading=16),
        "cell": ParagraphStyle("Cell", parent=base["Normal"], fontSize=10, leading=13),
        "footer": ParagraphStyle("Footer", parent=base["Normal"], fontSize=8, leading=10,
                                 textColor=colors.HexColor("#999999"), alignment=TA_CENTER),
    }


def render_invoice(
    fields: InvoiceFields,
    output_dir: Path,
    settings: Optional[dict] = None,
    *,
    now: Optional[datetime] = None,
) -> RenderedInvoice:
    """Write one invoice PDF under output_dir and return where it went."""
    settings = settings or {}
    now = now or datetime.now(timezone.utc)
    invoice_number = new_invoice_number(settings.get("invoice_prefix"), now)

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    document_path = output_dir / f"{invoice_number}.pdf"

    quantity = fields.quantity or 1
    tax_rate = fields.tax_rate_pct if fields.tax_rate_pct is not None else DEFAULT_TAX_RATE_PCT
    unit_price = float(fields.amount or 0)
    subtotal = round(unit_price * quantity, 2)
    tax_amount = round(subtotal * tax_rate / 100, 2)
    total = round(subtotal + tax_amount, 2)

    st = _styles()
    doc = SimpleDocTemplate(
        str(document_path), pagesize=A4,
        leftMargin=20 * mm, rightMargin=20 * mm, topMargin=18 * mm, bottomMargin=18 * mm,
        title=f"Facture {invoice_number}",
    )
    story = []

    company = escape(settings.get("company_name") or "Entreprise")
    company_email = escape(settings.get("company_email") or "")
    header = Table(
        [[
            [Paragraph(company, st["company"]), Paragraph(company_email, st["muted"])],
            [
                Paragraph("FACTURE", st["title"]),
                Paragraph(escape(invoice_number), st["meta"]),
                Paragraph(now.strftime("%d/%m/%Y"), st["meta"]),
            ],
        ]],
        colWidths=[doc.width * 0.55, doc.width * 0.45],
    )
    header.setStyle(TableStyle([
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ("RIGHTPADDING", (0, 0), (-1, -1), 0),
    ]))
    story.append(header)
    story.append(Spacer(1, 14 * mm))

    story.append(Paragraph("Facturé à:", st["label"]))
    story.append(Paragraph(escape(fields.client_name or "Client"), st["client"]))
    if fields.client_email:
        story.append(Paragraph(escape(fields.client_email), st["muted"]))
    story.append(Spacer(1, 10 * mm))

    lines = Table(
        [
            ["Description", "Qté", "Prix HT", "Total"],
            [
                Paragraph(escape(fields.description or "Service"), st["cell"]),
                str(quantity),
                _pdf_amount(unit_price),
                _pdf_amount(subtotal),
            ],
        ],
        colWidths=[doc.width * 0.52, doc.width * 0.1, doc.width * 0.19, doc.width * 0.19],
        repeatRows=1,
    )
    lines.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), HEADER_BG),
        ("FONT", (0, 0), (-1, 0), "Helvetica-Bold", 10),
        ("FONT", (0, 1), (-1, -1), "Helvetica", 10),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
        ("LINEBELOW", (0, -1), (-1, -1), 0.5, colors.HexColor("#e5e7eb")),
        ("TOPPADDING", (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    story.append(lines)
    story.append(Spacer(1, 8 * mm))

    tax_label = f"{tax_rate:g}"
    totals = Table(
        [
            ["Sous-total HT:", _pdf_amount(subtotal)],
            [f"TVA ({tax_label}%):", _pdf_amount(tax_amount)],
            ["Total TTC:", _pdf_amount(total)],
        ],
        colWidths=[doc.width * 0.3, doc.width * 0.2],
        hAlign="RIGHT",
    )
    totals.setStyle(TableStyle([
        ("FONT", (0, 0), (-1, 1), "Helvetica", 10),
        ("FONT", (0, 2), (-1, 2), "Helvetica-Bold", 13),
        ("TEXTCOLOR", (0, 2), (-1, 2), ACCENT),
        ("ALIGN", (1, 0), (1, -1), "RIGHT"),
        ("TOPPADDING", (0, 2), (-1, 2), 8),
    ]))
    story.append(totals)
    story.append(Spacer(1, 30 * mm))
    story.append(Paragraph(FOOTER_TEXT, st["footer"]))

    doc.build(story)

    logger.info(
        "Invoice rendered",
        extra={"context": {"invoice_number": invoice_number, "total_with_tax": total, "path": str(document_path)}},
    )
    return RenderedInvoice(
        document_path=document_path,
        invoice_number=invoice_number,
        subtotal=subtotal,
        tax_amount=tax_amount,
        total_with_tax=total,
        tax_rate_pct=tax_rate,
        issued_at=now,
    )
