"""Tests for order status emails: templates, dispatcher, SMTP sender."""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from fulfillment.models import NotificationCategory, OrderStatus, TrackingInfo
from fulfillment.notifications.dispatcher import NotificationDispatcher
from fulfillment.notifications.email import EmailMessage, SmtpEmailSender
from fulfillment.notifications.templates import TemplateParams, render


class TestTemplates:
    @pytest.mark.parametrize("category", list(NotificationCategory))
    @pytest.mark.parametrize("language", ["en", "es"])
    def test_every_category_renders(self, category, language):
        rendered = render(language, category, TemplateParams(first_name="Ana", book_title="Max"))
        assert rendered.template_id == f"print_order_{category.value}.{language}"
        assert "Max" in rendered.subject
        assert "Ana" in rendered.text_body
        assert rendered.html_body.startswith("<!DOCTYPE html>")

    def test_unknown_language_falls_back_to_english(self):
        rendered = render("fr", NotificationCategory.SHIPPED, TemplateParams(book_title="Max"))
        assert rendered.template_id == "print_order_shipped.en"

    def test_regional_language_tag(self):
        rendered = render("es-MX", NotificationCategory.SHIPPED, TemplateParams(book_title="Max"))
        assert rendered.template_id == "print_order_shipped.es"

    def test_html_escaped_text_untouched(self):
        params = TemplateParams(book_title="<b>Max & Co</b>", message="x")
        rendered = render("en", NotificationCategory.REJECTED, params)
        assert "&lt;b&gt;Max &amp; Co&lt;/b&gt;" in rendered.html_body
        assert "<b>Max & Co</b>" in rendered.text_body

    def test_refund_templates_include_credits_and_support(self):
        params = TemplateParams(credits_refunded=12, support_email="help@test", message="cover file corrupt")
        rendered = render("en", NotificationCategory.REJECTED, params)
        assert "12 credits" in rendered.text_body
        assert "help@test" in rendered.text_body
        assert "cover file corrupt" in rendered.text_body


class TestDispatcher:
    def test_shipped_email_carries_tracking(self, make_order, dispatcher, email_sender):
        order = make_order(OrderStatus.SHIPPED, tracking=TrackingInfo("T1", "UPS", ["https://x"]))
        assert dispatcher.notify(order, NotificationCategory.SHIPPED) is True

        (message,) = email_sender.sent
        assert message.recipient == "ana@example.com"
        assert message.template_id == "print_order_shipped.en"
        assert "T1" in message.text_body
        assert "UPS" in message.text_body
        assert "https://x" in message.text_body
        assert "https://app.test/my-orders" in message.text_body

    def test_preferred_language(self, make_order, dispatcher, email_sender):
        order = make_order(OrderStatus.PRINTING, user_id="user_es")
        dispatcher.notify(order, NotificationCategory.IN_PRODUCTION)
        assert email_sender.sent[0].template_id == "print_order_in_production.es"

    def test_refund_email_defaults_to_order_credits(self, make_order, dispatcher, email_sender):
        order = make_order(OrderStatus.CANCELLED, credits=9)
        dispatcher.notify(order, NotificationCategory.CANCELED, "duplicate order")
        assert "9 credits" in email_sender.sent[0].text_body
        assert "duplicate order" in email_sender.sent[0].text_body

    def test_missing_user_skipped(self, make_order, dispatcher, email_sender, caplog):
        order = make_order(OrderStatus.SHIPPED, user_id="user_ghost")
        assert dispatcher.notify(order, NotificationCategory.SHIPPED) is False
        assert email_sender.sent == []
        assert "not found" in caplog.text

    def test_delivery_failure_is_reported_not_raised(self, make_order, users, caplog):
        sender = MagicMock()
        sender.send.return_value.success = False
        sender.send.return_value.error = "SMTPServerDisconnected"
        order = make_order(OrderStatus.SHIPPED)

        with caplog.at_level("WARNING", logger="fulfillment.notifications.dispatcher"):
            delivered = NotificationDispatcher(users, sender).notify(order, NotificationCategory.SHIPPED)

        assert delivered is False
        (record,) = [r for r in caplog.records if r.name == "fulfillment.notifications.dispatcher"]
        assert record.levelname == "WARNING"
        assert record.exc_info is None
        assert f"not delivered for order {order.order_id}: SMTPServerDisconnected" in record.getMessage()

    def test_sender_exception_never_propagates(self, make_order, users):
        sender = MagicMock()
        sender.send.side_effect = RuntimeError("boom")
        order = make_order(OrderStatus.SHIPPED)
        assert NotificationDispatcher(users, sender).notify(order, NotificationCategory.SHIPPED) is False

    def test_user_lookup_exception_never_propagates(self, make_order, email_sender):
        users = MagicMock()
        users.get.side_effect = ConnectionError("db down")
        order = make_order(OrderStatus.SHIPPED)
        assert NotificationDispatcher(users, email_sender).notify(order, NotificationCategory.SHIPPED) is False


class TestSmtpSender:
    MESSAGE = EmailMessage(
        recipient="ana@example.com",
        template_id="print_order_shipped.en",
        subject="Shipped",
        text_body="text",
        html_body="<p>html</p>",
    )

    def test_not_configured(self):
        result = SmtpEmailSender(host="", sender="").send(self.MESSAGE)
        assert result.success is False
        assert "not configured" in result.error

    def test_format_message(self):
        msg = SmtpEmailSender(host="smtp.test", sender="orders@test").format_message(self.MESSAGE)
        assert msg["To"] == "ana@example.com"
        assert msg["X-Template-Id"] == "print_order_shipped.en"
        assert len(msg.get_payload()) == 2

    @patch("fulfillment.notifications.email.smtplib.SMTP")
    def test_send_success(self, mock_smtp):
        server = mock_smtp.return_value.__enter__.return_value
        sender = SmtpEmailSender(host="smtp.test", user="u", password="p", sender="orders@test")
        assert sender.send(self.MESSAGE).success is True
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("u", "p")
        server.send_message.assert_called_once()

    @patch("fulfillment.notifications.email.smtplib.SMTP")
    def test_send_failure_returns_result(self, mock_smtp):
        mock_smtp.side_effect = smtplib.SMTPConnectError(421, "busy")
        result = SmtpEmailSender(host="smtp.test", sender="orders@test").send(self.MESSAGE)
        assert result.success is False
        assert result.error == "SMTPConnectError"
