import html
import logging

from storefront.core.email_client import send_email
from storefront.models.order import Order, OrderItem

logger = logging.getLogger(__name__)


def _format_amount(amount: float) -> str:
    return f"Rs. {amount:,.2f}"


def build_order_confirmation(order: Order, items: list[OrderItem]) -> tuple[str, str, str]:
    """
    Return (subject, text_body, html_body) for the order confirmation email.
    """
    subject = f"Order confirmed: {order.order_number}"

    lines = [
        f"- {it.name} x {it.quantity}: {_format_amount(it.price * it.quantity)}"
        for it in items
    ]
    text_body = "\n".join(
        [
            f"Hi {order.ship_full_name},",
            "",
            f"Thanks for shopping with Hearthwood. Your order {order.order_number} has been placed.",
            "",
            *lines,
            "",
            f"Shipping: {_format_amount(order.shipping_cost)}",
            f"Tax: {_format_amount(order.tax)}",
            f"Total: {_format_amount(order.total_amount)}",
            f"Payment method: {order.payment_method}",
            "",
            f"Delivering to {order.ship_address_line1}, {order.ship_city}, "
            f"{order.ship_state} {order.ship_postal_code}",
        ]
    )

    rows = "".join(
        f"<tr><td>{html.escape(it.name)}</td><td>{it.quantity}</td>"
        f"<td>{_format_amount(it.price * it.quantity)}</td></tr>"
        for it in items
    )
    html_body = f"""
    <html>
      <body>
        <p>Hi {html.escape(order.ship_full_name)},</p>
        <p>Your order <strong>{html.escape(order.order_number)}</strong> has been placed.</p>
        <table>
          <tr><th>Item</th><th>Qty</th><th>Amount</th></tr>
          {rows}
        </table>
        <p>Total: <strong>{_format_amount(order.total_amount)}</strong></p>
      </body>
    </html>
    """
    return subject, text_body, html_body


def send_order_confirmation(order: Order, items: list[OrderItem], to_email: str) -> None:
    """
    Send the confirmation email for a freshly placed order.

    Errors propagate; OrderService decides they are non-fatal.
    """
    subject, text_body, html_body = build_order_confirmation(order, items)
    send_email(to_email=to_email, subject=subject, text_body=text_body, html_body=html_body)
    logger.info("Order confirmation sent for %s", order.order_number)
