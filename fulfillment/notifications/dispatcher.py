"""Notification Dispatcher — best-effort order status emails.

Single place where order emails are built and sent:
resolve user -> pick template by category + preferred language -> send.

Contract:
- Never raises. A rejected send is a ``NotificationFailure``, logged as
  a warning; anything unexpected is logged with its traceback. The
  webhook acknowledgement does not depend on email delivery.
- Unknown user -> logged and skipped.
"""

from __future__ import annotations

import logging

from fulfillment.errors import NotificationFailure
from fulfillment.models import NotificationCategory, PrintOrder
from fulfillment.notifications.email import EmailMessage, EmailSender
from fulfillment.notifications.templates import TemplateParams, render
from fulfillment.users import UserDirectory

logger = logging.getLogger(__name__)


class NotificationDispatcher:
    """Builds and sends user-facing order status emails."""

    def __init__(
        self,
        users: UserDirectory,
        sender: EmailSender,
        web_url: str = "",
        support_email: str = "",
    ):
        self._users = users
        self._sender = sender
        self._orders_url = f"{web_url.rstrip('/')}/my-orders"
        self._support_email = support_email

    def build_params(
        self,
        order: PrintOrder,
        first_name: str,
        message: str | None = None,
        credits_refunded: int | None = None,
    ) -> TemplateParams:
        return TemplateParams(
            first_name=first_name,
            book_title=order.book_title,
            order_id=order.external_id or order.order_id,
            shipping_address=order.shipping_address.formatted(),
            tracking_id=order.tracking.tracking_id or "",
            carrier_name=order.tracking.carrier_name or "",
            tracking_urls=list(order.tracking.tracking_urls),
            message=message or "",
            credits_refunded=(
                order.cost.total_cost_credits if credits_refunded is None else credits_refunded
            ),
            status=order.provider_status or order.status.value,
            my_orders_url=self._orders_url,
            support_email=self._support_email,
        )

    def notify(
        self,
        order: PrintOrder,
        category: NotificationCategory,
        message: str | None = None,
        credits_refunded: int | None = None,
    ) -> bool:
        """Send one status email for ``order``. Returns True if delivered."""
        try:
            user = self._users.get(order.user_id)
            if user is None:
                logger.warning(
                    "Notification %s skipped for order %s: user %s not found",
                    category.value, order.order_id, order.user_id,
                )
                return False

            params = self.build_params(order, user.first_name, message, credits_refunded)
            rendered = render(user.preferred_language, category, params)
            result = self._sender.send(
                EmailMessage(
                    recipient=user.email,
                    template_id=rendered.template_id,
                    subject=rendered.subject,
                    text_body=rendered.text_body,
                    html_body=rendered.html_body,
                )
            )
            if not result.success:
                raise NotificationFailure(result.error or "email not accepted")
        except NotificationFailure as exc:
            logger.warning(
                "Notification %s not delivered for order %s: %s",
                category.value, order.order_id, exc,
            )
            return False
        except Exception:
            logger.exception(
                "Notification %s failed for order %s", category.value, order.order_id
            )
            return False

        logger.info("Notification %s sent for order %s", rendered.template_id, order.order_id)
        return True
