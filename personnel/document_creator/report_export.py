"""
Daily report exports.

``build_report_snapshot`` collects a report, its unit and every row with the
person and category resolved. The PDF and XLSX renderers only read that dict.
"""
from io import BytesIO
from typing import Any, Dict, List
from xml.sax.saxutils import escape

from openpyxl import Workbook
from openpyxl.styles import Alignment, Font
from openpyxl.utils import get_column_letter
from reportlab.lib import colors
from reportlab.lib.pagesizes import A4, landscape
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import DailyReport, Person, Unit
from ..services.unit_tree import unit_label
from .request_pdf import format_date


PDF_COLUMNS = ("#", "Service no.", "Name", "Category", "From", "To", "Location", "Notes", "E")
XLSX_COLUMNS = (
    "No.", "Service no.", "First name", "Last name", "Category",
    "From", "To", "Location", "Notes", "Emergency",
)


def build_report_snapshot(db: Session, report: DailyReport) -> Dict[str, Any]:
    unit = db.query(Unit).filter(Unit.id == report.unit_id).first()
    person_ids = {r.person_id for r in report.rows}
    people = {p.id: p for p in db.query(Person).filter(Person.id.in_(person_ids))} if person_ids else {}

    rows: List[Dict[str, Any]] = []
    for row in report.rows:
        person = people.get(row.person_id)
        category = row.category
        rows.append({
            "service_no": person.service_no if person else "",
            "first_name": person.first_name if person else "",
            "last_name": person.last_name if person else "",
            "category_code": category.code if category else "",
            "category": f"{category.code} - {category.label}" if category else "",
            "from_date": row.from_date,
            "to_date": row.to_date,
            "location": row.location or "",
            "notes": row.notes or "",
            "emergency": bool(row.emergency),
        })

    emergencies = sum(1 for r in rows if r["emergency"])
    leaves = sum(1 for r in rows if r["category_code"] in settings.period_category_codes)
    return {
        "id": str(report.id),
        "date": report.report_date,
        "unit": unit_label(unit) if unit else str(report.unit_id),
        "status": report.status or "DRAFT",
        "rows": rows,
        "summary": {"rows": len(rows), "emergencies": emergencies, "leaves": leaves, "total": len(rows)},
    }


def render_report_pdf(snapshot: Dict[str, Any]) -> bytes:
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=landscape(A4),
        leftMargin=36,
        rightMargin=36,
        topMargin=40,
        bottomMargin=40,
        title=f"Daily report {format_date(snapshot['date'])}",
    )
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("ReportTitle", parent=styles["Heading1"], fontName="Times-Bold", fontSize=16, alignment=1)
    meta_style = ParagraphStyle("ReportMeta", parent=styles["Normal"], fontName="Times-Roman", fontSize=10, alignment=1)
    cell_style = ParagraphStyle("ReportCell", parent=styles["Normal"], fontName="Times-Roman", fontSize=9, leading=11)

    story = [
        Paragraph(escape(settings.doc_header_title), meta_style),
        Paragraph("Daily Report", title_style),
        Paragraph(
            escape(f"Date: {format_date(snapshot['date'])}   Unit: {snapshot['unit']}   Status: {snapshot['status']}"),
            meta_style,
        ),
        Spacer(1, 12),
    ]

    s = snapshot["summary"]
    summary = Table(
        [["Rows", "Emergencies", "Leaves", "Total"], [s["rows"], s["emergencies"], s["leaves"], s["total"]]],
        colWidths=[90, 90, 90, 90],
    )
    summary.setStyle(TableStyle([
        ("ALIGN", (0, 0), (-1, -1), "CENTER"),
        ("FONTNAME", (0, 0), (-1, 0), "Times-Bold"),
        ("FONTNAME", (0, 1), (-1, 1), "Times-Roman"),
        ("BOX", (0, 0), (-1, -1), 0.5, colors.HexColor("#9aa0a6")),
        ("INNERGRID", (0, 0), (-1, -1), 0.25, colors.HexColor("#9aa0a6")),
    ]))
    story.append(summary)
    story.append(Spacer(1, 14))

    data = [list(PDF_COLUMNS)]
    for i, r in enumerate(snapshot["rows"], start=1):
        data.append([
            str(i),
            r["service_no"],
            Paragraph(escape(f"{r['first_name']} {r['last_name']}".strip()), cell_style),
            Paragraph(escape(r["category"]), cell_style),
            format_date(r["from_date"]),
            format_date(r["to_date"]),
            Paragraph(escape(r["location"]), cell_style),
            Paragraph(escape(r["notes"]), cell_style),
            "E" if r["emergency"] else "",
        ])
    if len(data) == 1:
        data.append(["", "No rows", "", "", "", "", "", "", ""])

    table = Table(data, colWidths=[24, 72, 130, 130, 60, 60, 85, 160, 30], repeatRows=1)
    table.setStyle(TableStyle([
        ("FONTNAME", (0, 0), (-1, 0), "Times-Bold"),
        ("FONTNAME", (0, 1), (-1, -1), "Times-Roman"),
        ("FONTSIZE", (0, 0), (-1, -1), 9),
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#eeeeee")),
        ("GRID", (0, 0), (-1, -1), 0.5, colors.HexColor("#9aa0a6")),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("ALIGN", (0, 0), (0, -1), "CENTER"),
        ("ALIGN", (4, 0), (5, -1), "CENTER"),
        ("ALIGN", (-1, 0), (-1, -1), "CENTER"),
    ]))
    story.append(table)

    def _footer(canvas, doc_):
        canvas.saveState()
        canvas.setFont("Times-Roman", 8)
        canvas.drawRightString(doc_.pagesize[0] - 36, 22, f"Page {doc_.page}")
        canvas.restoreState()

    doc.build(story, onFirstPage=_footer, onLaterPages=_footer)
    buffer.seek(0)
    return buffer.read()


def render_report_xlsx(snapshot: Dict[str, Any]) -> bytes:
    wb = Workbook()
    ws = wb.active
    ws.title = "Daily report"

    ws.append(list(XLSX_COLUMNS))
    for col in range(1, len(XLSX_COLUMNS) + 1):
        cell = ws.cell(row=1, column=col)
        cell.font = Font(bold=True)
        cell.alignment = Alignment(horizontal="center", vertical="center")

    for i, r in enumerate(snapshot["rows"], start=1):
        ws.append([
            i,
            r["service_no"],
            r["first_name"],
            r["last_name"],
            r["category"],
            r["from_date"].isoformat() if r["from_date"] else "",
            r["to_date"].isoformat() if r["to_date"] else "",
            r["location"],
            r["notes"],
            "YES" if r["emergency"] else "NO",
        ])

    ws.freeze_panes = "A2"
    for col_idx, width in enumerate((5, 15, 18, 18, 28, 12, 12, 20, 30, 12), start=1):
        ws.column_dimensions[get_column_letter(col_idx)].width = width

    bio = BytesIO()
    wb.save(bio)
    return bio.getvalue()
