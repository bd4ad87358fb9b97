from io import BytesIO
from xml.sax.saxutils import escape
from typing import List, Optional

from reportlab.lib import colors
from reportlab.lib.pagesizes import letter
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle

from ..models.models import Invoice, Organization, Quote


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(name="DocTitle", parent=styles["Title"], fontSize=20, spaceAfter=6, alignment=0))
    styles.add(ParagraphStyle(name="Small", parent=styles["Normal"], fontSize=8, textColor=colors.grey))
    return styles


def _fmt(amount) -> str:
    return f"${(amount or 0):,.2f}"


def _customer_block(customer) -> List[str]:
    if customer is None:
        return []
    lines = [customer.name]
    street = customer.billing_street if customer.billing_differs_from_service else customer.service_street
    city = customer.billing_city if customer.billing_differs_from_service else customer.service_city
    state = customer.billing_state if customer.billing_differs_from_service else customer.service_state
    zip_code = customer.billing_zip if customer.billing_differs_from_service else customer.service_zip
    if street:
        lines.append(street)
    locality = " ".join(p for p in [f"{city}," if city else None, state, zip_code] if p)
    if locality:
        lines.append(locality)
    if customer.email:
        lines.append(customer.email)
    return lines


def _items_table(rows, totals):
    data = [["Item", "Qty", "Unit price", "Total"]]
    for item in rows:
        name = escape(item.name)
        if item.description:
            name += f"<br/><font size=8>{escape(item.description)}</font>"
        data.append([Paragraph(name, getSampleStyleSheet()["Normal"]), f"{item.quantity:g}",
                     _fmt(item.unit_price), _fmt(item.line_total)])
    first_total_row = len(data)
    for label, value in totals:
        data.append(["", "", label, value])

    table = Table(data, colWidths=[3.6 * inch, 0.7 * inch, 1.2 * inch, 1.2 * inch], repeatRows=1)
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f2937")),
        ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
        ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
        ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LINEBELOW", (0, 1), (-1, first_total_row - 1), 0.25, colors.lightgrey),
        ("LINEABOVE", (2, first_total_row), (-1, first_total_row), 0.75, colors.black),
        ("FONTNAME", (2, -1), (-1, -1), "Helvetica-Bold"),
    ]))
    return table


def _render(org: Organization, title: str, number: str, meta: List[str], customer, rows, totals,
            footer: Optional[str]) -> bytes:
    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=letter, leftMargin=0.75 * inch, rightMargin=0.75 * inch,
                            topMargin=0.75 * inch, bottomMargin=0.75 * inch, title=f"{title} {number}")
    styles = _styles()
    story = [
        Paragraph(escape(org.company_name or org.name), styles["Heading2"]),
        Paragraph(f"{title} {number}", styles["DocTitle"]),
    ]
    for line in meta:
        story.append(Paragraph(line, styles["Normal"]))
    story.append(Spacer(1, 12))
    if customer is not None:
        story.append(Paragraph("<b>Bill to</b>", styles["Normal"]))
        for line in _customer_block(customer):
            story.append(Paragraph(escape(line), styles["Normal"]))
        story.append(Spacer(1, 12))
    story.append(_items_table(rows, totals))
    if footer:
        story.append(Spacer(1, 18))
        story.append(Paragraph(escape(footer).replace("\n", "<br/>"), styles["Normal"]))
    if org.support_email or org.phone:
        story.append(Spacer(1, 24))
        contact = " | ".join(p for p in [org.support_email, org.phone] if p)
        story.append(Paragraph(f"Questions? Contact us: {escape(contact)}", styles["Small"]))
    doc.build(story)
    return buf.getvalue()


def render_quote_pdf(org: Organization, quote: Quote) -> bytes:
    meta = [f"Date: {quote.created_at:%Y-%m-%d}" if quote.created_at else ""]
    if quote.expiration_date:
        meta.append(f"Valid until: {quote.expiration_date:%Y-%m-%d}")
    totals = [("Subtotal", _fmt(quote.subtotal))]
    if quote.discount_amount:
        totals.append(("Discount", f"-{_fmt(quote.discount_amount)}"))
    if quote.additional_fees:
        totals.append(("Fees", _fmt(quote.additional_fees)))
    totals.append((f"Tax ({quote.tax_rate or 0:g}%)", _fmt(quote.tax_amount)))
    totals.append(("Total", _fmt(quote.total_amount)))
    footer = "\n\n".join(p for p in [quote.notes, quote.terms] if p)
    return _render(org, "Quote", quote.quote_number, [m for m in meta if m], quote.customer, quote.items, totals,
                   footer or None)


def render_invoice_pdf(org: Organization, invoice: Invoice) -> bytes:
    meta = [f"Issued: {invoice.issue_date:%Y-%m-%d}"]
    if invoice.due_date:
        meta.append(f"Due: {invoice.due_date:%Y-%m-%d}")
    meta.append(f"Status: {invoice.status.upper()}")
    totals = [("Subtotal", _fmt(invoice.subtotal))]
    if invoice.discount_amount:
        totals.append(("Discount", f"-{_fmt(invoice.discount_amount)}"))
    if invoice.additional_fees:
        totals.append(("Fees", _fmt(invoice.additional_fees)))
    totals.append((f"Tax ({invoice.tax_rate or 0:g}%)", _fmt(invoice.tax_amount)))
    totals.append(("Total", _fmt(invoice.amount)))
    if invoice.amount_paid:
        totals.append(("Paid", f"-{_fmt(invoice.amount_paid)}"))
    totals.append(("Balance due", _fmt(invoice.balance_due)))
    return _render(org, "Invoice", invoice.invoice_number, meta, invoice.customer, invoice.items, totals,
                   invoice.notes)
