# clubhouse/statement.py
from io import BytesIO

from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from clubhouse import models
from clubhouse.folio import PAY_METHODS, folio_totals

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

HEADERS = ["Date", "Type", "Description", "Player", "Status", "Charge", "Payment"]
COLUMN_WIDTHS = [18, 14, 36, 18, 10, 12, 12]


def _value(v):
    return str(getattr(v, "value", v) or "")


def statement_rows(folio: models.Folio) -> list:
    """Charges and payments merged in time order, voided charges included."""
    rows = []
    for c in folio.charges:
        rows.append((
            c.created_at,
            c.charge_type,
            c.description or "",
            c.player_name or "",
            _value(c.status),
            float(c.amount or 0),
            None,
        ))
    for p in folio.payments:
        method = PAY_METHODS.get(p.pay_method, p.pay_method or "")
        rows.append((
            p.paid_at,
            p.kind or "payment",
            f"{method} {p.reference_no or ''}".strip(),
            "",
            "",
            None,
            float(p.amount or 0),
        ))
    rows.sort(key=lambda r: (r[0] is None, r[0] or 0))
    return rows


def build_statement_workbook(folio: models.Folio) -> BytesIO:
    wb = Workbook()
    ws = wb.active
    ws.title = "Statement"

    header_fill = PatternFill(start_color="4472C4", end_color="4472C4", fill_type="solid")
    header_font = Font(bold=True, color="FFFFFF", size=11)
    header_alignment = Alignment(horizontal="center", vertical="center", wrap_text=True)
    border = Border(
        left=Side(style="thin"),
        right=Side(style="thin"),
        top=Side(style="thin"),
        bottom=Side(style="thin"),
    )
    number_alignment = Alignment(horizontal="right", vertical="center")
    data_alignment = Alignment(horizontal="left", vertical="center")
    voided_font = Font(color="999999", strike=True)

    for col_idx, header in enumerate(HEADERS, start=1):
        cell = ws.cell(row=1, column=col_idx)
        cell.value = header
        cell.fill = header_fill
        cell.font = header_font
        cell.alignment = header_alignment
        cell.border = border

    row_idx = 1
    for row_idx, row in enumerate(statement_rows(folio), start=2):
        at, kind, description, player, status, charge, payment = row
        values = [at.strftime("%Y-%m-%d %H:%M") if at else "", kind, description, player, status, charge, payment]
        for col_idx, value in enumerate(values, start=1):
            cell = ws.cell(row=row_idx, column=col_idx)
            cell.value = value
            cell.border = border
            if col_idx >= 6:
                cell.number_format = "#,##0.00"
                cell.alignment = number_alignment
            else:
                cell.alignment = data_alignment
            if status == models.ChargeStatus.voided.value:
                cell.font = voided_font

    totals = folio_totals(folio)
    summary = [
        ("Total charges", totals.total_charges),
        ("Total payments", totals.total_payments),
        ("Balance", totals.balance),
        ("Credit", totals.credit),
    ]
    bold = Font(bold=True)
    for offset, (label, amount) in enumerate(summary, start=2):
        label_cell = ws.cell(row=row_idx + offset, column=5)
        label_cell.value = label
        label_cell.font = bold
        amount_cell = ws.cell(row=row_idx + offset, column=6)
        amount_cell.value = amount
        amount_cell.number_format = "#,##0.00"
        amount_cell.alignment = number_alignment

    for col_idx, width in enumerate(COLUMN_WIDTHS, start=1):
        ws.column_dimensions[get_column_letter(col_idx)].width = width
    ws.freeze_panes = "A2"

    output = BytesIO()
    wb.save(output)
    output.seek(0)
    return output
