"""Rendering of transactional message templates.

Templates are plain ``str.format`` strings keyed by name. Callers only rely
on the (subject, html) pair.
"""

from __future__ import annotations

import html
import logging
from collections.abc import Mapping
from typing import Any

logger = logging.getLogger(__name__)


class TemplateNotFoundError(LookupError):
    """Raised when no template is registered under the requested name."""

    def __init__(self, name: str):
        super().__init__(f"Email template '{name}' not found")
        self.name = name


_BUILTIN_TEMPLATES: dict[str, tuple[str, str]] = {
    "subscription_expiring_7days": (
        "Your {plan_name} subscription renews in 7 days",
        "<p>Hi {admin_name},</p>"
        "<p>The {plan_name} plan for <strong>{shop_name}</strong> renews on {period_end}."
        " {amount} will be charged.</p>"
        '<p><a href="{billing_url}">Review billing</a></p>',
    ),
    "subscription_expiring_3days": (
        "Your {plan_name} subscription renews in 3 days",
        "<p>Hi {admin_name},</p>"
        "<p>The {plan_name} plan for <strong>{shop_name}</strong> renews on {period_end}."
        " {amount} will be charged.</p>"
        '<p><a href="{billing_url}">Review billing</a></p>',
    ),
    "subscription_expiring_1day": (
        "Your {plan_name} subscription renews tomorrow",
        "<p>Hi {admin_name},</p>"
        "<p>The {plan_name} plan for <strong>{shop_name}</strong> renews tomorrow"
        " ({period_end}). {amount} will be charged.</p>"
        '<p><a href="{billing_url}">Review billing</a></p>',
    ),
    "subscription_past_due": (
        "Payment overdue for {shop_name}",
        "<p>Hi {admin_name},</p>"
        "<p>We could not renew the {plan_name} plan for <strong>{shop_name}</strong>."
        " Pay {amount} before {grace_end} to avoid suspension.</p>"
        '<p><a href="{billing_url}">Pay now</a></p>',
    ),
    "subscription_past_due_day1": (
        "Reminder: {days_until_suspension} days until {shop_name} is suspended",
        "<p>Hi {admin_name},</p>"
        "<p>Your payment of {amount} for <strong>{shop_name}</strong> is still outstanding."
        " Service will be suspended in {days_until_suspension} days.</p>"
        '<p><a href="{billing_url}">Pay now</a></p>',
    ),
    "subscription_past_due_day5": (
        "Final notice: {shop_name} will be suspended in {days_until_suspension} days",
        "<p>Hi {admin_name},</p>"
        "<p>This is the final reminder for <strong>{shop_name}</strong>."
        " Pay {amount} before {grace_end} to keep your shop running.</p>"
        '<p><a href="{billing_url}">Pay now</a></p>',
    ),
    "subscription_suspended_notice": (
        "{shop_name} has been suspended",
        "<p>Hi {admin_name},</p>"
        "<p><strong>{shop_name}</strong> was suspended for non-payment."
        " Your data is kept for {data_retention_days} days.</p>"
        '<p><a href="{billing_url}">Reactivate</a></p>',
    ),
    "subscription_expired": (
        "Your {plan_name} subscription has expired",
        "<p>Hi {admin_name},</p>"
        "<p>The {plan_name} plan for <strong>{shop_name}</strong> ended on {period_end}"
        " and was not set to renew.</p>"
        '<p><a href="{billing_url}">Renew</a></p>',
    ),
    "subscription_reactivated": (
        "{shop_name} is active again",
        "<p>Hi {admin_name},</p>"
        "<p>The {plan_name} plan for <strong>{shop_name}</strong> is active until"
        " {period_end}. Thank you!</p>",
    ),
    "payment_failed": (
        "Payment failed for {shop_name}",
        "<p>Hi {admin_name},</p>"
        "<p>A payment of {amount} for <strong>{shop_name}</strong> failed: {reason}.</p>"
        '<p><a href="{billing_url}">Update payment method</a></p>',
    ),
    "stock_alert": (
        "Stock alert: {product_name}",
        "<p>{product_name} is {alert_label} ({current_stock} left,"
        " reorder level {reorder_level}).</p>",
    ),
    "report_ready": (
        "Your {report_type} report is ready",
        "<p>{report_type} report for {start} to {end}:</p>{body}",
    ),
}


class _Variables(dict[str, Any]):
    def __missing__(self, key: str) -> str:
        return ""


class TemplateService:
    """Renders named templates into an email subject and HTML body."""

    def __init__(self, templates: Mapping[str, tuple[str, str]] | None = None):
        self.templates = dict(templates) if templates is not None else dict(_BUILTIN_TEMPLATES)

    def has_template(self, name: str) -> bool:
        return name in self.templates

    def render(self, template_name: str, variables: Mapping[str, Any]) -> tuple[str, str]:
        """Render ``template_name`` with ``variables``.

        Unknown placeholders render as empty strings. Values are HTML-escaped
        in the body, except for the pre-rendered ``body`` variable.

        Raises:
            TemplateNotFoundError: If the template does not exist.
        """
        try:
            subject_tpl, html_tpl = self.templates[template_name]
        except KeyError:
            logger.warning("Template %s not found", template_name)
            raise TemplateNotFoundError(template_name) from None

        plain = _Variables({k: "" if v is None else v for k, v in variables.items()})
        escaped = _Variables(
            {
                k: v if k == "body" else html.escape(str(v))
                for k, v in plain.items()
            }
        )
        subject = subject_tpl.format_map(plain)
        body = html_tpl.format_map(escaped)
        return subject, body
