"""
Render an HTML e-mail body to PDF.

The mail is reduced to text (style/script dropped, tags stripped) and laid
out with reportlab platypus below a small header block.
"""

import io
from dataclasses import dataclass
from datetime import datetime
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from ..mail_client.messages import html_to_text


@dataclass
class RenderedPdf:
    """PDF bytes and page count of a rendered mail."""

    pdf_bytes: bytes
    page_count: int


def render_html_to_pdf(
    html: str,
    subject: str | None = None,
    sender: str | None = None,
    date: datetime | None = None,
) -> RenderedPdf:
    """
    Render an HTML mail body as an A4 PDF.

    Args:
        html: Raw HTML body
        subject: Mail subject (header block)
        sender: From header (header block)
        date: Mail date (header block)

    Returns:
        RenderedPdf with at least one page
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        topMargin=15 * mm,
        bottomMargin=15 * mm,
        leftMargin=15 * mm,
        rightMargin=15 * mm,
        title=subject or "E-mail invoice",
    )
    styles = getSampleStyleSheet()
    subject_style = ParagraphStyle(
        "Subject", parent=styles["Heading2"], textColor=colors.HexColor("#0f172a")
    )
    meta_style = ParagraphStyle(
        "Meta", parent=styles["Normal"], fontSize=9, textColor=colors.HexColor("#64748b")
    )
    body_style = ParagraphStyle("Body", parent=styles["Normal"], fontSize=10, leading=14)

    elements = []
    if subject:
        elements.append(Paragraph(escape(subject), subject_style))
    if sender:
        elements.append(Paragraph(f"<b>From:</b> {escape(sender)}", meta_style))
    if date:
        elements.append(Paragraph(f"<b>Date:</b> {date.strftime('%Y-%m-%d %H:%M')}", meta_style))
    elements.append(Spacer(1, 8 * mm))

    text = html_to_text(html, keep_lines=True)
    paragraphs = [p for p in text.split("\n") if p.strip()] or [" "]
    for paragraph in paragraphs:
        elements.append(Paragraph(escape(paragraph), body_style))
        elements.append(Spacer(1, 2 * mm))

    doc.build(elements)
    return RenderedPdf(pdf_bytes=buffer.getvalue(), page_count=doc.page)
