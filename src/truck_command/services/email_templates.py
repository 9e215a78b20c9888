"""
HTML Email Templates for customer-facing invoices
"""
from typing import Optional
import html

from ..db.models import Invoice, User


class EmailTemplate:
    """Base class for email templates"""

    @staticmethod
    def render_plain_text(**kwargs) -> str:
        """Render plain text version"""
        raise NotImplementedError

    @staticmethod
    def render_html(**kwargs) -> str:
        """Render HTML version"""
        raise NotImplementedError


def format_currency(amount) -> str:
    return f"${amount or 0:,.2f}"


def format_long_date(value) -> str:
    return value.strftime("%B %d, %Y").replace(" 0", " ") if value else ""


class InvoiceEmailTemplate(EmailTemplate):
    """Invoice summary with the sender's message and the amount due"""

    @staticmethod
    def render_plain_text(invoice: Invoice, message: str, sender: Optional[User] = None,
                          payment_link: Optional[str] = None) -> str:
        amount_due = invoice.balance
        lines = [
            message,
            "",
            f"Invoice #{invoice.invoice_number}",
            f"Invoice Date: {format_long_date(invoice.invoice_date)}",
            f"Due Date: {format_long_date(invoice.due_date)}",
            f"Invoice Total: {format_currency(invoice.total)}",
        ]
        if invoice.amount_paid:
            lines.append(f"Amount Paid: {format_currency(invoice.amount_paid)}")
        lines.append(f"Amount Due: {format_currency(amount_due)}")
        if payment_link:
            lines += ["", f"Pay online: {payment_link}"]
        if sender and sender.business_name:
            lines += ["", sender.business_name]
        return "\n".join(lines)

    @staticmethod
    def render_html(invoice: Invoice, message: str, sender: Optional[User] = None,
                    payment_link: Optional[str] = None) -> str:
        amount_due = invoice.balance
        company = html.escape((sender.business_name if sender else None) or "Your Company")
        body = html.escape(message).replace("\n", "<br>")
        customer = html.escape(invoice.customer or "Customer")

        paid_row = ""
        if invoice.amount_paid:
            paid_row = (
                f'<tr><td style="padding:16px;color:#059669;">Amount Paid</td>'
                f'<td style="padding:16px;color:#059669;text-align:right;">-{format_currency(invoice.amount_paid)}</td></tr>'
            )
        pay_button = ""
        if payment_link:
            pay_button = (
                f'<p style="text-align:center;margin:32px 0;"><a href="{html.escape(payment_link)}" '
                f'style="background:#2563eb;color:#ffffff;padding:14px 32px;border-radius:8px;'
                f'text-decoration:none;font-weight:600;">Pay {format_currency(amount_due)}</a></p>'
            )

        return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Invoice #{html.escape(invoice.invoice_number)}</title></head>
<body style="margin:0;padding:0;font-family:-apple-system,'Segoe UI',Roboto,Arial,sans-serif;background:#f3f4f6;">
  <table role="presentation" style="max-width:600px;width:100%;margin:40px auto;background:#ffffff;border-radius:12px;">
    <tr><td style="padding:32px 40px;background:#2563eb;border-radius:12px 12px 0 0;">
      <h1 style="margin:0;color:#ffffff;font-size:24px;">{company}</h1>
    </td></tr>
    <tr><td style="padding:24px 40px;background:#eff6ff;">
      <p style="margin:0;color:#6b7280;font-size:12px;">INVOICE NUMBER</p>
      <p style="margin:0;font-size:18px;font-weight:600;">#{html.escape(invoice.invoice_number)}</p>
      <p style="margin:12px 0 0 0;color:#6b7280;font-size:12px;">AMOUNT DUE</p>
      <p style="margin:0;color:#2563eb;font-size:24px;font-weight:700;">{format_currency(amount_due)}</p>
    </td></tr>
    <tr><td style="padding:32px 40px;">
      <p style="margin:0 0 4px 0;color:#6b7280;font-size:12px;">BILL TO</p>
      <p style="margin:0;font-weight:600;">{customer}</p>
      <p style="margin:16px 0 0 0;color:#374151;">Invoice Date: {format_long_date(invoice.invoice_date)}<br>
      Due Date: {format_long_date(invoice.due_date)}</p>
    </td></tr>
    <tr><td style="padding:0 40px 32px 40px;">
      <div style="padding:24px;background:#f9fafb;border-left:4px solid #2563eb;">{body}</div>
    </td></tr>
    <tr><td style="padding:0 40px 32px 40px;">
      <table role="presentation" style="width:100%;border-collapse:collapse;">
        <tr><td style="padding:16px;">Invoice Total</td><td style="padding:16px;text-align:right;">{format_currency(invoice.total)}</td></tr>
        {paid_row}
        <tr style="background:#eff6ff;"><td style="padding:16px;font-weight:700;">Amount Due</td>
        <td style="padding:16px;font-weight:700;text-align:right;">{format_currency(amount_due)}</td></tr>
      </table>
      {pay_button}
    </td></tr>
  </table>
</body>
</html>"""
