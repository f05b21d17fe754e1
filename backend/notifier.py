"""Transactional email through Resend.

Every send returns ``(sent, error)``; callers treat the outcome as advisory and
never let it fail the request that triggered it.
"""

from html import escape
from typing import Dict, Iterable, Optional, Tuple

import resend

SendResult = Tuple[bool, Optional[str]]

STATUS_MESSAGES = {
    "pending": (
        "Order received",
        "We have received your order and will confirm it shortly.",
    ),
    "confirmed": (
        "Your order is confirmed",
        "We have received and confirmed your order. Our team will prepare it soon.",
    ),
    "preparing": (
        "Your order is being prepared",
        "Your order is currently being prepared in our warehouse.",
    ),
    "shipped": (
        "Your order has shipped",
        "Good news! Your order has shipped and is on its way to you.",
    ),
    "delivered": (
        "Your order has been delivered",
        "Your order was delivered. We hope you enjoy your products!",
    ),
    "cancelled": (
        "Your order has been cancelled",
        "Your order was cancelled. Contact us if you have any questions.",
    ),
}
TRACKING_STEPS = ("confirmed", "preparing", "shipped", "delivered")


def status_message(status: str) -> Tuple[str, str]:
    return STATUS_MESSAGES.get(
        status, ("Order update", "The status of your order has been updated.")
    )


def _wrap_html(title: str, body_html: str, store_name: str) -> str:
    return f"""<!DOCTYPE html>
<html lang="en">
  <head>
    <meta charset="UTF-8" />
    <title>{escape(title)}</title>
  </head>
  <body style="margin:0;padding:24px;background-color:#f4f4f4;font-family:Arial,sans-serif;color:#333;">
    <table width="100%" cellpadding="0" cellspacing="0" role="presentation" style="max-width:600px;margin:0 auto;background:#fff;border-radius:10px;">
      <tr>
        <td style="padding:24px;background:#000;color:#fff;border-radius:10px 10px 0 0;">
          <h1 style="margin:0;font-size:24px;">{escape(store_name)}</h1>
        </td>
      </tr>
      <tr>
        <td style="padding:30px;">
          <h2 style="margin:0 0 16px 0;font-size:20px;">{escape(title)}</h2>
          {body_html}
        </td>
      </tr>
    </table>
  </body>
</html>"""


class EmailNotifier:
    def __init__(
        self,
        api_key: str,
        sender: str,
        logger,
        client_url: str = "http://localhost:3000",
        store_name: str = "AYNEXT",
        currency: str = "TND",
    ):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.logger = logger
        self.client_url = client_url.rstrip("/")
        self.store_name = store_name
        self.currency = currency

    def send_email(self, payload: Dict[str, object]) -> SendResult:
        if not self.api_key:
            return False, "Email service is not configured."

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            response = resend.Emails.send(payload)
        except Exception as exc:
            return False, str(exc)
        finally:
            resend.api_key = previous_api_key

        if not isinstance(response, dict) or not response.get("id"):
            return False, str(response)

        return True, None

    def _payload(self, recipient: str, subject: str, html_body: str, text_body: str):
        return {
            "from": f"{self.store_name} <{self.sender}>",
            "to": [recipient],
            "subject": subject,
            "html": html_body,
            "text": text_body,
        }

    def send_welcome(self, user: Dict) -> SendResult:
        recipient = user.get("email")
        if not recipient:
            return False, "Missing recipient email."

        full_name = f"{user.get('name', '')} {user.get('surname', '')}".strip()
        products_url = f"{self.client_url}/products"
        text_body = (
            f"Welcome to {self.store_name}!\n\n"
            f"Hello {full_name},\n\n"
            f"Your account was created with the email {recipient}.\n"
            f"Discover our products: {products_url}\n\n"
            f"The {self.store_name} team"
        )
        html_body = _wrap_html(
            f"Welcome, {full_name}!",
            f'<p>Your account was created with the email <strong>{escape(recipient)}</strong>.</p>'
            f'<p><a href="{escape(products_url)}">Discover our products</a></p>',
            self.store_name,
        )
        sent, error = self.send_email(
            self._payload(recipient, f"Welcome to {self.store_name}!", html_body, text_body)
        )
        if sent:
            self.logger.info("Welcome email sent to %s", recipient)
        return sent, error

    def send_new_product(self, recipients: Iterable[Dict], product: Dict) -> SendResult:
        recipients = [recipient for recipient in recipients if recipient.get("email")]
        if not recipients:
            return False, "No recipients."
        if not self.api_key:
            return False, "Email service is not configured."

        price = product.get("discount_price") or product.get("price")
        product_url = f"{self.client_url}/product/{product.get('_id')}"
        subject = f"New product: {product.get('name', '')}"
        sent_count = 0
        failed_count = 0
        for recipient in recipients:
            text_body = (
                f"Hello {recipient.get('name', '')},\n\n"
                f"Discover our new product: {product.get('name', '')} "
                f"({product.get('brand') or self.store_name}).\n"
                f"{product.get('description', '')}\n\n"
                f"Price: {price} {self.currency}\n"
                f"See the product: {product_url}\n"
            )
            html_body = _wrap_html(
                subject,
                f"<p>{escape(str(product.get('description', '')))}</p>"
                f"<p><strong>{escape(str(price))} {escape(self.currency)}</strong></p>"
                f'<p><a href="{escape(product_url)}">See the product</a></p>',
                self.store_name,
            )
            sent, error = self.send_email(
                self._payload(recipient["email"], subject, html_body, text_body)
            )
            if sent:
                sent_count += 1
            else:
                failed_count += 1
                self.logger.warning(
                    "New product email to %s failed: %s", recipient["email"], error
                )

        self.logger.info(
            "New product emails sent: %s succeeded, %s failed", sent_count, failed_count
        )
        if failed_count:
            return False, f"{failed_count} of {len(recipients)} emails failed."
        return True, None

    def send_order_status(self, user: Dict, order: Dict, new_status: str) -> SendResult:
        recipient = user.get("email")
        if not recipient:
            return False, "Missing recipient email."

        title, message = status_message(new_status)
        order_number = order.get("order_number") or str(order.get("_id"))
        total = float(order.get("total") or 0)
        tracking_number = order.get("tracking_number")
        item_lines = "\n".join(
            f"{item.get('quantity')}x {item.get('name', 'Product')} - "
            f"{float(item.get('line_total') or 0):.2f} {self.currency}"
            for item in order.get("items") or []
        )
        progress = "\n".join(
            f"[{'x' if new_status in TRACKING_STEPS[index:] else ' '}] {step}"
            for index, step in enumerate(TRACKING_STEPS)
        )
        text_body = (
            f"{title}\n\n"
            f"Hello {user.get('name', '')} {user.get('surname', '')},\n\n"
            f"{message}\n\n"
            f"Order number: #{order_number}\n"
            f"Total: {total:.2f} {self.currency}\n"
            + (f"Tracking number: {tracking_number}\n" if tracking_number else "")
            + f"\n{item_lines}\n\n{progress}\n\n"
            f"See my orders: {self.client_url}/orders\n"
        )
        html_body = _wrap_html(
            title,
            f"<p>{escape(message)}</p>"
            f"<p>Order number: <strong>#{escape(order_number)}</strong><br />"
            f"Total: {total:.2f} {escape(self.currency)}</p>"
            + (f"<p>Tracking number: {escape(str(tracking_number))}</p>" if tracking_number else ""),
            self.store_name,
        )
        sent, error = self.send_email(
            self._payload(recipient, f"{title} - Order #{order_number}", html_body, text_body)
        )
        if sent:
            self.logger.info("Order status email (%s) sent to %s", new_status, recipient)
        return sent, error
