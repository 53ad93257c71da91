"""Order status email templates (English and Spanish).

``render(language, category, params)`` returns subject, plain text and
HTML bodies. Unsupported languages fall back to English. Parameter
values are HTML-escaped in the HTML body only.
"""

from __future__ import annotations

import html
from dataclasses import dataclass, field
from typing import Any, Callable

from fulfillment.models import NotificationCategory

DEFAULT_LANGUAGE = "en"


@dataclass(frozen=True)
class RenderedEmail:
    template_id: str
    subject: str
    text_body: str
    html_body: str


@dataclass
class TemplateParams:
    first_name: str = ""
    book_title: str = ""
    order_id: str = ""
    shipping_address: str = ""
    tracking_id: str = ""
    carrier_name: str = ""
    tracking_urls: list[str] = field(default_factory=list)
    message: str = ""
    credits_refunded: int = 0
    status: str = ""
    my_orders_url: str = ""
    support_email: str = ""


def _e(value: Any) -> str:
    return html.escape(str(value or ""))


def _page(title: str, color: str, paragraphs: list[str], button: tuple[str, str] | None) -> str:
    body = "\n".join(f"<p>{p}</p>" for p in paragraphs)
    cta = ""
    if button:
        label, url = button
        cta = (
            f'<div style="text-align: center; margin: 20px 0;">'
            f'<a href="{_e(url)}" style="background-color: #6c757d; color: white; '
            f'padding: 12px 25px; text-decoration: none; border-radius: 5px;">{_e(label)}</a></div>'
        )
    return f"""<!DOCTYPE html>
<html>
<head><meta charset="UTF-8"><title>{_e(title)}</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background-color: #f8f9fa; padding: 30px; border-radius: 10px;">
    <h1 style="color: {color}; text-align: center;">{_e(title)}</h1>
    {body}
    {cta}
  </div>
</body>
</html>"""


def _status_label(status: str) -> str:
    return status.replace("_", " ").title()


# ── English ───────────────────────────────────────────────────────────────


def _en_in_production(p: TemplateParams) -> tuple[str, str, str]:
    subject = f'Your book "{p.book_title}" is now in production!'
    text = (
        f"Hello {p.first_name},\n\n"
        f'Great news! Your book "{p.book_title}" has entered production and is being printed.\n\n'
        f"Order ID: {p.order_id}\n"
        f"Shipping Address:\n{p.shipping_address}\n\n"
        "You'll receive a shipping notification with tracking information once it's dispatched.\n"
        f"Track your order at: {p.my_orders_url}\n\n"
        "Best regards,\nThe PetTales Team"
    )
    page = _page(
        "Your Book Is In Production!",
        "#007bff",
        [
            f"Hello {_e(p.first_name)},",
            f"Your book <strong>\"{_e(p.book_title)}\"</strong> has entered production and is being printed.",
            f"<strong>Order ID:</strong> {_e(p.order_id)}",
        ],
        ("View My Orders", p.my_orders_url),
    )
    return subject, text, page


def _en_shipped(p: TemplateParams) -> tuple[str, str, str]:
    primary_url = p.tracking_urls[0] if p.tracking_urls else ""
    subject = f'Your book "{p.book_title}" has shipped!'
    text = (
        f"Hello {p.first_name},\n\n"
        f'Your book "{p.book_title}" has been shipped and is on its way to you.\n\n'
        f"Order ID: {p.order_id}\n"
        f"Shipping Address:\n{p.shipping_address}\n\n"
        f"Tracking ID: {p.tracking_id}\n"
        f"Carrier: {p.carrier_name}\n"
        + (f"Track your package: {primary_url}\n" if primary_url else "")
        + f"\nView all your orders at: {p.my_orders_url}\n\n"
        "Best regards,\nThe PetTales Team"
    )
    paragraphs = [
        f"Hello {_e(p.first_name)},",
        f"Your book <strong>\"{_e(p.book_title)}\"</strong> has been shipped and is on its way to you.",
        f"<strong>Tracking ID:</strong> {_e(p.tracking_id)}<br><strong>Carrier:</strong> {_e(p.carrier_name)}",
    ]
    if primary_url:
        paragraphs.append(f'<a href="{_e(primary_url)}">Track your package</a>')
    return subject, text, _page("Your Book Has Shipped!", "#28a745", paragraphs, ("View My Orders", p.my_orders_url))


def _en_rejected(p: TemplateParams) -> tuple[str, str, str]:
    issue = p.message or "Technical issue during processing"
    subject = f'Issue with your book order "{p.book_title}" - Credits Refunded'
    text = (
        f"Hello {p.first_name},\n\n"
        f'There was an issue with your print order for "{p.book_title}" and it could not be processed.\n\n'
        f"Order ID: {p.order_id}\n"
        f"Issue: {issue}\n\n"
        f"We have refunded {p.credits_refunded} credits to your account.\n"
        f"Contact our support team if you need assistance: {p.support_email}\n\n"
        f"View your orders and credit balance at: {p.my_orders_url}\n\n"
        "Best regards,\nThe PetTales Team"
    )
    page = _page(
        "Issue With Your Order",
        "#dc3545",
        [
            f"Hello {_e(p.first_name)},",
            f"There was an issue with your print order for <strong>\"{_e(p.book_title)}\"</strong>.",
            f"<strong>Issue:</strong> {_e(issue)}",
            f"We have refunded <strong>{_e(p.credits_refunded)} credits</strong> to your account.",
        ],
        ("View My Orders", p.my_orders_url),
    )
    return subject, text, page


def _en_canceled(p: TemplateParams) -> tuple[str, str, str]:
    reason = p.message or "Order canceled by system"
    subject = f'Your book order "{p.book_title}" has been canceled - Credits Refunded'
    text = (
        f"Hello {p.first_name},\n\n"
        f'Your print order for "{p.book_title}" has been canceled.\n\n'
        f"Order ID: {p.order_id}\n"
        f"Cancellation Reason: {reason}\n\n"
        f"We have refunded {p.credits_refunded} credits to your account.\n"
        f"Questions? Contact {p.support_email}\n\n"
        f"View your orders and credit balance at: {p.my_orders_url}\n\n"
        "Best regards,\nThe PetTales Team"
    )
    page = _page(
        "Your Order Has Been Canceled",
        "#fd7e14",
        [
            f"Hello {_e(p.first_name)},",
            f"Your print order for <strong>\"{_e(p.book_title)}\"</strong> has been canceled.",
            f"<strong>Reason:</strong> {_e(reason)}",
            f"We have refunded <strong>{_e(p.credits_refunded)} credits</strong> to your account.",
        ],
        ("View My Orders", p.my_orders_url),
    )
    return subject, text, page


_EN_STATUS_MESSAGES = {
    "created": "Your order has been created and is being processed.",
    "unpaid": "Your order is awaiting payment confirmation.",
    "payment_in_progress": "Your payment is being processed.",
    "production_delayed": "Your order has been temporarily delayed in production. We apologize for any inconvenience.",
    "production_ready": "Your order is ready to enter production.",
    "delivered": "Your order has been delivered. Enjoy your book!",
}


def _en_status_update(p: TemplateParams) -> tuple[str, str, str]:
    display = _EN_STATUS_MESSAGES.get(p.status.lower()) or p.message or (
        f"Your order status has been updated to: {p.status}"
    )
    subject = f'Update on your book order "{p.book_title}"'
    text = (
        f"Hello {p.first_name},\n\n"
        f'Here is an update on your print order for "{p.book_title}".\n\n'
        f"Order ID: {p.order_id}\n"
        f"Current Status: {_status_label(p.status)}\n\n"
        f"{display}\n\n"
        f"View your order details at: {p.my_orders_url}\n\n"
        "Best regards,\nThe PetTales Team"
    )
    page = _page(
        "Order Update",
        "#17a2b8",
        [
            f"Hello {_e(p.first_name)},",
            f"<strong>Current Status:</strong> {_e(_status_label(p.status))}",
            _e(display),
        ],
        ("View My Orders", p.my_orders_url),
    )
    return subject, text, page


# ── Spanish ───────────────────────────────────────────────────────────────


def _es_in_production(p: TemplateParams) -> tuple[str, str, str]:
    subject = f'¡Tu libro "{p.book_title}" está en producción!'
    text = (
        f"Hola {p.first_name},\n\n"
        f'¡Buenas noticias! Tu libro "{p.book_title}" ha entrado en producción y se está imprimiendo.\n\n'
        f"ID del Pedido: {p.order_id}\n"
        f"Dirección de Envío:\n{p.shipping_address}\n\n"
        "Recibirás una notificación de envío con la información de seguimiento.\n"
        f"Consulta tu pedido en: {p.my_orders_url}\n\n"
        "Saludos cordiales,\nEl Equipo de PetTales"
    )
    page = _page(
        "¡Tu Libro Está en Producción!",
        "#007bff",
        [
            f"Hola {_e(p.first_name)},",
            f"Tu libro <strong>\"{_e(p.book_title)}\"</strong> ha entrado en producción.",
            f"<strong>ID del Pedido:</strong> {_e(p.order_id)}",
        ],
        ("Ver Mis Pedidos", p.my_orders_url),
    )
    return subject, text, page


def _es_shipped(p: TemplateParams) -> tuple[str, str, str]:
    primary_url = p.tracking_urls[0] if p.tracking_urls else ""
    subject = f'¡Tu libro "{p.book_title}" ha sido enviado!'
    text = (
        f"Hola {p.first_name},\n\n"
        f'Tu libro "{p.book_title}" ha sido enviado y está en camino.\n\n'
        f"ID del Pedido: {p.order_id}\n"
        f"Dirección de Envío:\n{p.shipping_address}\n\n"
        f"ID de Seguimiento: {p.tracking_id}\n"
        f"Transportista: {p.carrier_name}\n"
        + (f"Rastrea tu paquete: {primary_url}\n" if primary_url else "")
        + f"\nConsulta tus pedidos en: {p.my_orders_url}\n\n"
        "Saludos cordiales,\nEl Equipo de PetTales"
    )
    paragraphs = [
        f"Hola {_e(p.first_name)},",
        f"Tu libro <strong>\"{_e(p.book_title)}\"</strong> ha sido enviado y está en camino.",
        f"<strong>ID de Seguimiento:</strong> {_e(p.tracking_id)}<br><strong>Transportista:</strong> {_e(p.carrier_name)}",
    ]
    if primary_url:
        paragraphs.append(f'<a href="{_e(primary_url)}">Rastrea tu paquete</a>')
    return subject, text, _page("¡Tu Libro Ha Sido Enviado!", "#28a745", paragraphs, ("Ver Mis Pedidos", p.my_orders_url))


def _es_rejected(p: TemplateParams) -> tuple[str, str, str]:
    issue = p.message or "Problema técnico durante el procesamiento"
    subject = f'Problema con tu pedido "{p.book_title}" - Créditos Reembolsados'
    text = (
        f"Hola {p.first_name},\n\n"
        f'Hubo un problema con tu pedido de impresión de "{p.book_title}" y no pudo ser procesado.\n\n'
        f"ID del Pedido: {p.order_id}\n"
        f"Problema: {issue}\n\n"
        f"Hemos reembolsado {p.credits_refunded} créditos a tu cuenta.\n"
        f"Contacta a nuestro equipo de soporte si necesitas ayuda: {p.support_email}\n\n"
        f"Consulta tus pedidos y saldo de créditos en: {p.my_orders_url}\n\n"
        "Saludos cordiales,\nEl Equipo de PetTales"
    )
    page = _page(
        "Problema con Tu Pedido",
        "#dc3545",
        [
            f"Hola {_e(p.first_name)},",
            f"Hubo un problema con tu pedido de <strong>\"{_e(p.book_title)}\"</strong>.",
            f"<strong>Problema:</strong> {_e(issue)}",
            f"Hemos reembolsado <strong>{_e(p.credits_refunded)} créditos</strong> a tu cuenta.",
        ],
        ("Ver Mis Pedidos", p.my_orders_url),
    )
    return subject, text, page


def _es_canceled(p: TemplateParams) -> tuple[str, str, str]:
    reason = p.message or "Pedido cancelado por el sistema"
    subject = f'Tu pedido "{p.book_title}" ha sido cancelado - Créditos Reembolsados'
    text = (
        f"Hola {p.first_name},\n\n"
        f'Tu pedido de impresión de "{p.book_title}" ha sido cancelado.\n\n'
        f"ID del Pedido: {p.order_id}\n"
        f"Motivo de Cancelación: {reason}\n\n"
        f"Hemos reembolsado {p.credits_refunded} créditos a tu cuenta.\n"
        f"¿Preguntas? Escribe a {p.support_email}\n\n"
        f"Consulta tus pedidos y saldo de créditos en: {p.my_orders_url}\n\n"
        "Saludos cordiales,\nEl Equipo de PetTales"
    )
    page = _page(
        "Tu Pedido Ha Sido Cancelado",
        "#fd7e14",
        [
            f"Hola {_e(p.first_name)},",
            f"Tu pedido de <strong>\"{_e(p.book_title)}\"</strong> ha sido cancelado.",
            f"<strong>Motivo:</strong> {_e(reason)}",
            f"Hemos reembolsado <strong>{_e(p.credits_refunded)} créditos</strong> a tu cuenta.",
        ],
        ("Ver Mis Pedidos", p.my_orders_url),
    )
    return subject, text, page


_ES_STATUS_MESSAGES = {
    "created": "Tu pedido ha sido creado y se está procesando.",
    "unpaid": "Tu pedido está esperando la confirmación del pago.",
    "payment_in_progress": "Tu pago se está procesando.",
    "production_delayed": "Tu pedido se ha retrasado temporalmente en producción. Disculpa las molestias.",
    "production_ready": "Tu pedido está listo para entrar en producción.",
    "delivered": "Tu pedido ha sido entregado. ¡Disfruta tu libro!",
}


def _es_status_update(p: TemplateParams) -> tuple[str, str, str]:
    display = _ES_STATUS_MESSAGES.get(p.status.lower()) or p.message or (
        f"El estado de tu pedido se ha actualizado a: {p.status}"
    )
    subject = f'Actualización de tu pedido "{p.book_title}"'
    text = (
        f"Hola {p.first_name},\n\n"
        f'Te informamos sobre el estado de tu pedido de "{p.book_title}".\n\n'
        f"ID del Pedido: {p.order_id}\n"
        f"Estado Actual: {_status_label(p.status)}\n\n"
        f"{display}\n\n"
        f"Consulta los detalles en: {p.my_orders_url}\n\n"
        "Saludos cordiales,\nEl Equipo de PetTales"
    )
    page = _page(
        "Actualización del Pedido",
        "#17a2b8",
        [
            f"Hola {_e(p.first_name)},",
            f"<strong>Estado Actual:</strong> {_e(_status_label(p.status))}",
            _e(display),
        ],
        ("Ver Mis Pedidos", p.my_orders_url),
    )
    return subject, text, page


_Renderer = Callable[[TemplateParams], tuple[str, str, str]]

TEMPLATES: dict[str, dict[NotificationCategory, _Renderer]] = {
    "en": {
        NotificationCategory.IN_PRODUCTION: _en_in_production,
        NotificationCategory.SHIPPED: _en_shipped,
        NotificationCategory.REJECTED: _en_rejected,
        NotificationCategory.CANCELED: _en_canceled,
        NotificationCategory.STATUS_UPDATE: _en_status_update,
    },
    "es": {
        NotificationCategory.IN_PRODUCTION: _es_in_production,
        NotificationCategory.SHIPPED: _es_shipped,
        NotificationCategory.REJECTED: _es_rejected,
        NotificationCategory.CANCELED: _es_canceled,
        NotificationCategory.STATUS_UPDATE: _es_status_update,
    },
}


def render(language: str, category: NotificationCategory, params: TemplateParams) -> RenderedEmail:
    """Render a template, falling back to English for unknown languages."""
    lang = (language or DEFAULT_LANGUAGE).lower().split("-")[0]
    if lang not in TEMPLATES:
        lang = DEFAULT_LANGUAGE
    subject, text, page = TEMPLATES[lang][category](params)
    return RenderedEmail(
        template_id=f"print_order_{category.value}.{lang}",
        subject=subject,
        text_body=text,
        html_body=page,
    )
