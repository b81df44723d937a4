"""Rental contract PDF, rendered from the contract view of a rental."""
import logging
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

logger = logging.getLogger(__name__)

TERMS = (
    'The renter returns the vehicle on or before the end date in the condition it was received.',
    'Deposits are handed back when the vehicle is returned and checked.',
    'If the vehicle is lost or stolen the renter pays the compensation price stated above.',
    'Late returns are charged per started day at the daily rental price.',
)

GRID_STYLE = TableStyle([
    ('BACKGROUND', (0, 0), (0, -1), colors.whitesmoke),
    ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
    ('VALIGN', (0, 0), (-1, -1), 'TOP'),
    ('GRID', (0, 0), (-1, -1), 0.5, colors.grey),
    ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
])


def contract_filename(view):
    return f"Rental-Contract-{view['vehicle_no']}-{view['id']}.pdf"


def _text(value):
    return 'N/A' if value in (None, '') else str(value)


def _section(rows):
    table = Table([[label, _text(value)] for label, value in rows], colWidths=[150, 330], hAlign='LEFT')
    table.setStyle(GRID_STYLE)
    return table


def render_contract_pdf(view, shop_name='Rental Shop'):
    """Build the contract and return the PDF bytes."""
    buf = BytesIO()
    doc = SimpleDocTemplate(buf, pagesize=A4, title=contract_filename(view))
    styles = getSampleStyleSheet()
    elems = []

    elems.append(Paragraph(f"{shop_name} | Rental Contract", styles['Title']))
    elems.append(Paragraph(f"Contract no. {view['id']}", styles['Normal']))
    elems.append(Spacer(1, 12))

    elems.append(Paragraph('Renter', styles['Heading2']))
    elems.append(_section([
        ('Name', view['full_name']),
        ('Sex', view.get('gender')),
        ('Nationality', view.get('nationality')),
        ('Passport', view.get('passport_number')),
        ('Phone', view['primary_contact']),
        ('Address', view.get('address')),
    ]))
    elems.append(Spacer(1, 12))

    elems.append(Paragraph('Vehicle', styles['Heading2']))
    elems.append(_section([
        ('Vehicle no.', view['vehicle_no']),
        ('Plate no.', view.get('license_plate')),
        ('Make / model', f"{_text(view.get('vehicle_make'))} {_text(view.get('vehicle_model'))}"),
        ('Class', view.get('vehicle_class')),
        ('Compensation price', view.get('compensation_price')),
    ]))
    elems.append(Spacer(1, 12))

    elems.append(Paragraph('Rental', styles['Heading2']))
    elems.append(_section([
        ('Start date', view['start_date']),
        ('End date', view['end_date']),
        ('Period', view['period']),
        ('Total cost', view['total_cost']),
        ('Deposit', f"{view['primary_deposit_type']}: {view['primary_deposit']}"),
        ('Incharge', view['incharger_name']),
    ]))
    elems.append(Spacer(1, 12))

    elems.append(Paragraph('Terms', styles['Heading2']))
    for number, term in enumerate(TERMS, start=1):
        elems.append(Paragraph(f"{number}. {term}", styles['Normal']))
    elems.append(Spacer(1, 36))

    signatures = Table([['Renter signature', 'Shop signature'], ['', '']],
                       colWidths=[240, 240], rowHeights=[18, 48], hAlign='LEFT')
    signatures.setStyle(TableStyle([('LINEBELOW', (0, 1), (-1, 1), 0.5, colors.black)]))
    elems.append(signatures)

    doc.build(elems)
    pdf = buf.getvalue()
    buf.close()
    logger.info(f"Rendered contract PDF for Rental [ID: {view['id']}] ({len(pdf)} bytes)")
    return pdf
