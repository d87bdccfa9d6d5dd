import smtplib
from email.mime.text import MIMEText
from html import escape

import structlog

from storefront.gateway import to_major_units
from storefront.models import Order, PaymentRecord

logger = structlog.get_logger(component="notifications")


def render_order_confirmation(store_name: str, payment: PaymentRecord, order: Order):
    """Return (subject, html body) for a paid order."""
    names = {
        (str(line.get("product_id")), line.get("variant_id")): line.get("name")
        for line in payment.cart_snapshot or []
    }

    rows = []
    for item in order.items:
        name = names.get((item.product_id, item.variant_id)) or item.product_id
        rows.append(
            "<tr>"
            f"<td>{escape(str(name))}</td>"
            f"<td align='center'>{item.quantity}</td>"
            f"<td align='right'>{to_major_units(item.unit_price_minor):,}</td>"
            f"<td align='right'>{to_major_units(item.line_total_minor):,}</td>"
            "</tr>"
        )

    subject = f"Order Confirmation - Ref {payment.reference}"
    html_body = (
        f"<h2>{escape(store_name)}: Order Confirmation</h2>"
        "<p>Thank you for shopping with us. Your payment has been received successfully.</p>"
        f"<p><strong>Order Reference:</strong> {escape(payment.reference)}</p>"
        "<table width='100%' border='1' cellpadding='6' style='border-collapse:collapse'>"
        "<thead><tr><th align='left'>Product</th><th>Qty</th><th align='right'>Price</th>"
        "<th align='right'>Total</th></tr></thead>"
        f"<tbody>{''.join(rows)}</tbody></table>"
        f"<p><strong>Total Paid:</strong> {to_major_units(order.amount_minor_units):,} {escape(order.currency)}</p>"
    )
    return subject, html_body


class OrderNotifier:
    """Sends the order confirmation e-mail over SMTP.

    Never raises: the payment is already paid when this runs, so a mail
    failure is logged and left at that.
    """

    def __init__(self, settings):
        self.settings = settings

    def _send(self, to_email: str, subject: str, html_body: str) -> None:
        s = self.settings
        from_email = s.from_email or s.smtp_user or "noreply@localhost"

        msg = MIMEText(html_body, "html", "utf-8")
        msg["Subject"] = subject
        msg["From"] = from_email
        msg["To"] = to_email

        if s.smtp_use_ssl:
            server = smtplib.SMTP_SSL(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout)
        else:
            server = smtplib.SMTP(s.smtp_host, s.smtp_port, timeout=s.smtp_timeout)

        with server as conn:
            conn.ehlo()
            if s.smtp_use_tls and not s.smtp_use_ssl:
                conn.starttls()
                conn.ehlo()
            if s.smtp_user and s.smtp_pass:
                conn.login(s.smtp_user, s.smtp_pass)
            conn.sendmail(from_email, [to_email], msg.as_string())

    def order_paid(self, payment: PaymentRecord, order: Order) -> bool:
        log = logger.bind(reference=payment.reference, order_id=order.id)
        if not self.settings.smtp_host:
            log.info("order_confirmation_skipped", reason="SMTP_HOST not set")
            return False

        to_email = payment.email
        subject, html_body = render_order_confirmation(self.settings.store_name, payment, order)
        try:
            self._send(to_email, subject, html_body)
        except (smtplib.SMTPException, OSError) as e:
            log.error("order_confirmation_failed", to=to_email, error=repr(e))
            return False

        log.info("order_confirmation_sent", to=to_email)
        return True
