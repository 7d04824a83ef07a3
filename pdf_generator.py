from io import BytesIO
from xml.sax.saxutils import escape

from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.enums import TA_CENTER
from datetime import datetime


def generate_report_pdf(report_data: dict) -> BytesIO:
    """
    Render a stored screening report as a PDF.

    report_data keys: report_id, patient_name, doctor_name, scan_date, report_text
    """
    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A4)
    story = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'CustomTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=colors.HexColor('#4f46e5'),
        spaceAfter=30,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )

    heading_style = ParagraphStyle(
        'CustomHeading',
        parent=styles['Heading2'],
        fontSize=14,
        textColor=colors.HexColor('#1e293b'),
        spaceAfter=12,
        fontName='Helvetica-Bold'
    )

    body_style = ParagraphStyle(
        'ReportBody',
        parent=styles['Code'],
        fontSize=9,
        leading=12,
        textColor=colors.HexColor('#334155'),
    )

    story.append(Paragraph("ALZHEIMER'S MRI SCREENING REPORT", title_style))
    story.append(Spacer(1, 0.2*inch))

    story.append(Paragraph("Report Details", heading_style))
    details = [
        ['Report ID:', str(report_data['report_id'])],
        ['Patient Name:', report_data['patient_name']],
        ['Doctor:', report_data['doctor_name']],
        ['Scan Date:', report_data['scan_date']],
    ]
    details_table = Table(details, colWidths=[2*inch, 4*inch])
    details_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (0, -1), colors.HexColor('#f8f9fa')),
        ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#1e293b')),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('BOTTOMPADDING', (0, 0), (-1, -1), 12),
        ('GRID', (0, 0), (-1, -1), 1, colors.HexColor('#dee2e6'))
    ]))
    story.append(details_table)
    story.append(Spacer(1, 0.3*inch))

    story.append(Paragraph("Report", heading_style))
    for line in report_data['report_text'].splitlines():
        # Paragraph parses markup, so the stored text is escaped first
        story.append(Paragraph(escape(line).replace(" ", "&nbsp;") or "&nbsp;", body_style))

    story.append(Spacer(1, 0.5*inch))
    footer = Paragraph(
        f"Rendered on {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        ParagraphStyle('Footer', fontSize=9, textColor=colors.HexColor('#adb5bd'), alignment=TA_CENTER)
    )
    story.append(footer)

    doc.build(story)
    buffer.seek(0)
    return buffer
