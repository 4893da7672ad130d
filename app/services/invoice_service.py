"""
Invoice service.
Renders tax invoices for orders as PDF (reportlab).
"""
from io import BytesIO
from typing import Dict, Any

from flask import current_app
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer

from app.models import Order
from app.utils.money import money_inr


def invoice_path(order: Order) -> str:
    return f"/invoices/{order.order_number}.pdf"


def _business_info() -> Dict[str, Any]:
    config = current_app.config
    return {
        'name': config.get('BUSINESS_NAME'),
        'address': config.get('BUSINESS_ADDRESS'),
        'phone': config.get('BUSINESS_PHONE'),
        'email': config.get('BUSINESS_EMAIL'),
        'gstin': config.get('BUSINESS_GSTIN'),
    }


def _address_lines(address: Dict[str, Any]) -> str:
    if not address:
        return '-'
    parts = [
        address.get('name'),
        address.get('street'),
        ', '.join(p for p in (address.get('city'), address.get('state'), address.get('postal_code')) if p),
        address.get('country'),
        address.get('phone'),
    ]
    return '<br/>'.join(p for p in parts if p)


def render_invoice_pdf(order: Order) -> BytesIO:
    """
    Render an order invoice.

    Amounts come from the order snapshot only, never from the live catalog.
    """
    business_info = _business_info()
    buffer = BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        rightMargin=0.75*inch,
        leftMargin=0.75*inch,
        topMargin=0.75*inch,
        bottomMargin=0.75*inch,
        title=f"Invoice {order.order_number}"
    )

    elements = []
    styles = getSampleStyleSheet()

    title_style = ParagraphStyle(
        'InvoiceTitle',
        parent=styles['Heading1'],
        fontSize=22,
        textColor=colors.HexColor('#2C3E50'),
        spaceAfter=12,
        alignment=TA_CENTER,
        fontName='Helvetica-Bold'
    )

    header_style = ParagraphStyle(
        'InvoiceHeader',
        parent=styles['Normal'],
        fontSize=10,
        textColor=colors.HexColor('#7F8C8D'),
        alignment=TA_CENTER,
        spaceAfter=6
    )

    # 1. Title and business header
    elements.append(Paragraph("TAX INVOICE", title_style))

    if business_info.get('name'):
        elements.append(Paragraph(f"<b>{business_info['name']}</b>", header_style))
    if business_info.get('address'):
        elements.append(Paragraph(business_info['address'], header_style))

    contact_parts = []
    if business_info.get('phone'):
        contact_parts.append(f"Tel: {business_info['phone']}")
    if business_info.get('email'):
        contact_parts.append(f"Email: {business_info['email']}")
    if business_info.get('gstin'):
        contact_parts.append(f"GSTIN: {business_info['gstin']}")
    if contact_parts:
        elements.append(Paragraph(" | ".join(contact_parts), header_style))

    elements.append(Spacer(1, 0.3*inch))

    # 2. Order metadata
    issued = order.paid_at or order.created_at
    info_data = [
        ['Invoice No:', order.order_number],
        ['Date:', issued.strftime('%d/%m/%Y') if issued else '-'],
        ['Payment:', f"{order.payment_method.upper()} ({order.payment_status})"],
    ]
    if order.transaction_id:
        info_data.append(['Transaction:', order.transaction_id])

    info_table = Table(info_data, colWidths=[2*inch, 3*inch])
    info_table.setStyle(TableStyle([
        ('ALIGN', (0, 0), (0, -1), 'RIGHT'),
        ('ALIGN', (1, 0), (1, -1), 'LEFT'),
        ('FONTNAME', (0, 0), (0, -1), 'Helvetica-Bold'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('TEXTCOLOR', (0, 0), (-1, -1), colors.HexColor('#34495E')),
    ]))
    elements.append(info_table)
    elements.append(Spacer(1, 0.2*inch))

    # 3. Addresses
    address_table = Table(
        [
            [Paragraph('<b>Bill to</b>', styles['Normal']), Paragraph('<b>Ship to</b>', styles['Normal'])],
            [Paragraph(_address_lines(order.billing_address), styles['Normal']),
             Paragraph(_address_lines(order.shipping_address), styles['Normal'])],
        ],
        colWidths=[3.35*inch, 3.35*inch]
    )
    address_table.setStyle(TableStyle([
        ('VALIGN', (0, 0), (-1, -1), 'TOP'),
        ('FONTSIZE', (0, 0), (-1, -1), 9),
    ]))
    elements.append(address_table)
    elements.append(Spacer(1, 0.3*inch))

    # 4. Items
    table_data = [['Item', 'Qty', 'Price', 'GST', 'Amount']]
    for item in order.items:
        label = item.name
        if item.variant_name:
            label = f"{label} ({item.variant_name})"
        table_data.append([
            Paragraph(label, styles['Normal']),
            str(item.quantity),
            money_inr(item.price),
            f"{item.gst_percentage}% {money_inr(item.gst_amount)}",
            money_inr(item.total),
        ])

    items_table = Table(table_data, colWidths=[2.7*inch, 0.6*inch, 1.1*inch, 1.2*inch, 1.1*inch])
    items_table.setStyle(TableStyle([
        ('BACKGROUND', (0, 0), (-1, 0), colors.HexColor('#3498DB')),
        ('TEXTCOLOR', (0, 0), (-1, 0), colors.whitesmoke),
        ('ALIGN', (0, 0), (-1, 0), 'CENTER'),
        ('FONTNAME', (0, 0), (-1, 0), 'Helvetica-Bold'),
        ('BOTTOMPADDING', (0, 0), (-1, 0), 12),
        ('ALIGN', (1, 1), (1, -1), 'CENTER'),
        ('ALIGN', (2, 1), (-1, -1), 'RIGHT'),
        ('GRID', (0, 0), (-1, -1), 0.5, colors.HexColor('#BDC3C7')),
        ('ROWBACKGROUNDS', (0, 1), (-1, -1), [colors.white, colors.HexColor('#ECF0F1')]),
    ]))
    elements.append(items_table)
    elements.append(Spacer(1, 0.2*inch))

    # 5. Totals
    totals_data = [
        ['Subtotal:', money_inr(order.subtotal)],
        ['GST:', money_inr(order.tax)],
        ['Shipping:', money_inr(order.shipping_cost)],
    ]
    if order.discount and order.discount > 0:
        label = f"Discount ({order.coupon_code}):" if order.coupon_code else 'Discount:'
        totals_data.append([label, f"-{money_inr(order.discount)}"])
    totals_data.append(['TOTAL:', money_inr(order.total)])
    if order.refund_amount and order.refund_amount > 0:
        totals_data.append(['Refunded:', money_inr(order.refund_amount)])

    total_row = 3 if not (order.discount and order.discount > 0) else 4
    totals_table = Table(totals_data, colWidths=[5.4*inch, 1.3*inch])
    totals_table.setStyle(TableStyle([
        ('ALIGN', (0, 0), (-1, -1), 'RIGHT'),
        ('FONTSIZE', (0, 0), (-1, -1), 10),
        ('FONTNAME', (0, total_row), (-1, total_row), 'Helvetica-Bold'),
        ('FONTSIZE', (0, total_row), (-1, total_row), 13),
        ('TEXTCOLOR', (0, total_row), (-1, total_row), colors.HexColor('#27AE60')),
    ]))
    elements.append(totals_table)

    footer_style = ParagraphStyle(
        'InvoiceFooter',
        parent=styles['Normal'],
        fontSize=8,
        textColor=colors.HexColor('#95A5A6'),
        alignment=TA_CENTER
    )
    elements.append(Spacer(1, 0.4*inch))
    elements.append(Paragraph("This is a computer generated invoice.", footer_style))

    doc.build(elements)
    buffer.seek(0)
    return buffer
