"""
PDF rendering of daily reports with reportlab's platypus layer.

``ReportDocument`` is the render-neutral model; ``ReportRenderer`` turns
it into PDF bytes off the event loop.
"""
from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass, field

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

_log = logging.getLogger("medcenter.reports")


@dataclass
class ReportTable:
    title: str
    headers: list[str]
    rows: list[list[str]] = field(default_factory=list)
    empty_text: str = "No records for this day."


@dataclass
class ReportDocument:
    title: str
    subtitle: str
    metrics: list[tuple[str, str]]
    tables: list[ReportTable]
    footer: str = ""


class ReportRenderer:
    def __init__(self) -> None:
        self.margin = 0.75 * inch
        self.brand_color = colors.HexColor("#2563eb")
        self.dark_gray = colors.HexColor("#1e293b")
        self.light_gray = colors.HexColor("#f1f5f9")

    async def render(self, document: ReportDocument) -> bytes:
        return await asyncio.to_thread(self.render_sync, document)

    def render_sync(self, document: ReportDocument) -> bytes:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=letter,
            rightMargin=self.margin,
            leftMargin=self.margin,
            topMargin=self.margin,
            bottomMargin=self.margin,
            title=document.title,
        )
        content_width = letter[0] - 2 * self.margin

        styles = getSampleStyleSheet()
        title_style = ParagraphStyle(
            "ReportTitle",
            parent=styles["Heading1"],
            fontSize=20,
            textColor=self.brand_color,
            spaceAfter=6,
            alignment=1,
        )
        subtitle_style = ParagraphStyle(
            "ReportSubtitle",
            parent=styles["Normal"],
            fontSize=11,
            textColor=self.dark_gray,
            spaceAfter=14,
            alignment=1,
        )
        heading_style = ParagraphStyle(
            "ReportHeading",
            parent=styles["Heading2"],
            fontSize=13,
            textColor=self.dark_gray,
            spaceBefore=16,
            spaceAfter=8,
        )
        footer_style = ParagraphStyle(
            "ReportFooter",
            parent=styles["Normal"],
            fontSize=8,
            textColor=colors.grey,
            alignment=1,
        )

        story = [
            Paragraph(document.title, title_style),
            Paragraph(document.subtitle, subtitle_style),
        ]

        # metric cards, two per row
        cells = [
            Paragraph(f"<b>{value}</b><br/><font size=8>{label}</font>", styles["Normal"])
            for label, value in document.metrics
        ]
        if len(cells) % 2:
            cells.append("")
        card_rows = [cells[i:i + 2] for i in range(0, len(cells), 2)]
        if card_rows:
            cards = Table(card_rows, colWidths=[content_width / 2] * 2)
            cards.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, -1), self.light_gray),
                ("BOX", (0, 0), (-1, -1), 0.5, colors.white),
                ("INNERGRID", (0, 0), (-1, -1), 4, colors.white),
                ("VALIGN", (0, 0), (-1, -1), "MIDDLE"),
                ("TOPPADDING", (0, 0), (-1, -1), 8),
                ("BOTTOMPADDING", (0, 0), (-1, -1), 8),
            ]))
            story.append(cards)

        for table in document.tables:
            story.append(Paragraph(table.title, heading_style))
            if not table.rows:
                story.append(Paragraph(table.empty_text, styles["Normal"]))
                continue
            data = [table.headers] + table.rows
            t = Table(data, repeatRows=1, colWidths=[content_width / len(table.headers)] * len(table.headers))
            t.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), self.brand_color),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("ROWBACKGROUNDS", (0, 1), (-1, -1), [colors.white, self.light_gray]),
                ("GRID", (0, 0), (-1, -1), 0.25, colors.lightgrey),
                ("VALIGN", (0, 0), (-1, -1), "TOP"),
            ]))
            story.append(t)

        if document.footer:
            story.append(Spacer(1, 0.4 * inch))
            story.append(Paragraph(document.footer, footer_style))

        doc.build(story)
        pdf = buffer.getvalue()
        _log.debug("rendered report '%s' (%d bytes)", document.title, len(pdf))
        return pdf
