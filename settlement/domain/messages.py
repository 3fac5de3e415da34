from __future__ import annotations

from html import escape

from settlement.domain.types import Order, OrderItem

Message = tuple[str, str]


def _money(amount: float, currency: str) -> str:
    symbol = {"gbp": "£", "usd": "$", "eur": "€"}.get(currency.lower(), "")
    if symbol:
        return f"{symbol}{amount:.2f}"
    return f"{amount:.2f} {currency.upper()}"


def _item_rows(items: list[OrderItem], currency: str) -> str:
    rows = []
    for item in items:
        label = escape(item.name or item.title or "Item")
        rows.append(
            f"<tr><td>{label}</td><td>{item.quantity}</td><td>{_money(item.line_total, currency)}</td></tr>"
        )
    return "<table>" + "".join(rows) + "</table>"


def order_confirmation(order: Order) -> Message:
    subject = f"Order confirmed - {order.order_number}"
    body = (
        f"<p>Hi {escape(order.customer.first_name or 'there')},</p>"
        f"<p>Thanks for your order <strong>{escape(order.order_number)}</strong>.</p>"
        f"{_item_rows(order.items, order.currency)}"
        f"<p>Total: {_money(order.totals.total, order.currency)}</p>"
    )
    if order.has_pre_order_items and order.pre_order_delivery_date:
        body += f"<p>Pre-order items ship from {escape(order.pre_order_delivery_date)}.</p>"
    return subject, body


def fulfillment_alert(order: Order) -> Message:
    physical = [item for item in order.items if item.is_physical]
    shipping = order.shipping or {}
    address = ", ".join(escape(str(value)) for value in shipping.values() if value)
    subject = f"Dispatch required - {order.order_number}"
    body = (
        f"<p>Order <strong>{escape(order.order_number)}</strong> has physical items to dispatch.</p>"
        f"{_item_rows(physical, order.currency)}"
        f"<p>Ship to: {escape(order.customer.full_name)}, {address}</p>"
    )
    return subject, body


def payee_sale(payee_label: str, order: Order, items: list[OrderItem]) -> Message:
    subject = f"You made a sale - {order.order_number}"
    body = (
        f"<p>Hi {escape(payee_label)},</p>"
        f"<p>The following sold in order {escape(order.order_number)}:</p>"
        f"{_item_rows(items, order.currency)}"
    )
    return subject, body


def pending_earnings(payee_label: str, amount: float, currency: str, order_number: str | None, site_url: str) -> Message:
    subject = f"You have {_money(amount, currency)} waiting for you"
    body = (
        f"<p>Hi {escape(payee_label)},</p>"
        f"<p>You earned {_money(amount, currency)} from order {escape(order_number or '')}, "
        "but we have no payout account on file for you yet.</p>"
        f"<p><a href=\"{escape(site_url)}/account/payouts\">Connect a payout account</a> "
        "and your pending earnings will be sent automatically.</p>"
    )
    return subject, body


def payout_completed(payee_label: str, amount: float, currency: str, order_number: str | None) -> Message:
    subject = f"Payout sent: {_money(amount, currency)}"
    body = (
        f"<p>Hi {escape(payee_label)},</p>"
        f"<p>We've sent {_money(amount, currency)} for order {escape(order_number or '')}.</p>"
    )
    return subject, body


def refund_adjustment(payee_label: str, order_number: str | None, amount: float, currency: str, is_full: bool) -> Message:
    kind = "a full refund" if is_full else "a partial refund"
    subject = f"Refund processed - {order_number or ''}".strip()
    body = (
        f"<p>Hi {escape(payee_label)},</p>"
        f"<p>Order {escape(order_number or '')} received {kind}. "
        f"{_money(amount, currency)} has been deducted from your earnings.</p>"
    )
    return subject, body
