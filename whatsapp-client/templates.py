"""Message templates and the registry that renders them.

A template is registered under a unique name and is either:

* a function taking the parameter mapping and returning the text, or
* a string with ``{{fieldName}}`` placeholders, filled by a global replace.

Rendering never raises for missing or None parameters: they render as an
empty string. Only an unknown template name is an error (TemplateNotFoundError),
so a legitimately empty rendering can always be told apart from a lookup miss.
"""

import re
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Union

from errors import TemplateNotFoundError

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

RenderFn = Callable[["TemplateParams"], str]


class TemplateParams(dict):
    """Parameter mapping that renders missing or None values as ''."""

    def __init__(self, params: Optional[Mapping[str, Any]] = None):
        super().__init__()
        for key, value in (params or {}).items():
            self[str(key)] = "" if value is None else str(value)

    def __missing__(self, key: str) -> str:
        return ""


class StringTemplate:
    """A template defined as text with ``{{fieldName}}`` placeholders."""

    def __init__(self, text: str):
        self.text = text

    def __call__(self, params: TemplateParams) -> str:
        return PLACEHOLDER_PATTERN.sub(lambda match: params[match.group(1)], self.text)

    def fields(self) -> List[str]:
        """Placeholder names in order of first appearance."""
        seen: List[str] = []
        for name in PLACEHOLDER_PATTERN.findall(self.text):
            if name not in seen:
                seen.append(name)
        return seen

    def __repr__(self) -> str:
        return f"StringTemplate({self.text!r})"


class TemplateRegistry:
    """Named templates. A name can only be registered once."""

    def __init__(self):
        self._templates: Dict[str, RenderFn] = {}

    @classmethod
    def with_defaults(cls) -> "TemplateRegistry":
        """Create a registry preloaded with the built-in templates."""
        registry = cls()
        for name, template in DEFAULT_TEMPLATES.items():
            registry.register(name, template)
        return registry

    def register(self, name: str, template: Union[str, RenderFn]) -> None:
        """Register a function-based or string-based template.

        Raises:
            ValueError: If the name is empty or already registered
            TypeError: If template is neither a string nor callable
        """
        if not name:
            raise ValueError("Template name must be provided")
        if name in self._templates:
            raise ValueError(f'Template "{name}" is already registered')
        if isinstance(template, str):
            template = StringTemplate(template)
        elif not callable(template):
            raise TypeError(f"Template must be a string or a callable, got {type(template).__name__}")
        self._templates[name] = template

    def render(self, name: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """Render a template.

        Raises:
            TemplateNotFoundError: If no template has that name
        """
        template = self._templates.get(name)
        if template is None:
            raise TemplateNotFoundError(name)
        return template(TemplateParams(params))

    def names(self) -> List[str]:
        return sorted(self._templates)

    def __contains__(self, name: object) -> bool:
        return name in self._templates

    def __iter__(self) -> Iterator[str]:
        return iter(self.names())

    def __len__(self) -> int:
        return len(self._templates)


def welcome(data: TemplateParams) -> str:
    """Welcome message for a new user. Fields: name, company (optional)."""
    return (
        f"👋 Welcome, *{data['name']}*!\n"
        f"\n"
        f"We are thrilled to have you join {data['company'] or 'our team'}.\n"
        f"\n"
        f"To get started, please complete your profile or take a look at our introductory guide. "
        f"We're here if you have any questions."
    )


def verification_code(data: TemplateParams) -> str:
    return (
        f"Your verification code is: *{data['code']}*\n"
        f"\n"
        f"This code will expire in 10 minutes. For your security, please do not share this code with anyone."
    )


def reset_code(data: TemplateParams) -> str:
    return (
        f"Your password reset code is: *{data['code']}*\n"
        f"\n"
        f"If you did not request this password reset, please secure your account and ignore this message."
    )


def order_status(data: TemplateParams) -> str:
    """Fields: orderId, status ("Processing", "Shipped", "Delivered", ...)."""
    return (
        f"*Order Update*\n"
        f"\n"
        f"Status for your order *#{data['orderId']}* has been updated to: *{data['status']}*.\n"
        f"\n"
        f"We will notify you of any further changes."
    )


def shipping_update(data: TemplateParams) -> str:
    """Fields: orderId, carrier, trackingNumber."""
    return (
        f"🚚 *Your Order has Shipped!*\n"
        f"\n"
        f"Good news! Your order *#{data['orderId']}* is on its way.\n"
        f"\n"
        f"Carrier: {data['carrier']}\n"
        f"Tracking #: *{data['trackingNumber']}*\n"
        f"\n"
        f"You can track your package on the carrier's website."
    )


def password_changed_notice(data: TemplateParams) -> str:
    return (
        f"*Security Alert: Password Changed*\n"
        f"\n"
        f"This is a confirmation that the password for your account (*{data['username']}*) was successfully changed.\n"
        f"\n"
        f"If you did *not* make this change, please contact our support team immediately."
    )


def appointment_reminder(data: TemplateParams) -> str:
    """Fields: serviceName, dateTime, location (optional, line omitted when empty)."""
    where = f"Where: {data['location']}" if data["location"] else ""
    return (
        f"*Appointment Reminder*\n"
        f"\n"
        f"This is a friendly reminder for your upcoming appointment:\n"
        f"\n"
        f"Service: *{data['serviceName']}*\n"
        f"When: *{data['dateTime']}*\n"
        f"{where}\n"
        f"\n"
        f"Please let us know if you need to reschedule."
    )


def invoice_generated(data: TemplateParams) -> str:
    """Fields: invoiceId, amount, dueDate."""
    return (
        f"*New Invoice Generated*\n"
        f"\n"
        f"A new invoice (*#{data['invoiceId']}*) has been generated for your account.\n"
        f"\n"
        f"Amount Due: *{data['amount']}*\n"
        f"Due Date: *{data['dueDate']}*\n"
        f"\n"
        f"You can view and pay the invoice in your account dashboard."
    )


def subscription_renewal_reminder(data: TemplateParams) -> str:
    """Fields: planName, renewalDate, amount."""
    return (
        f"*Subscription Renewal Notice*\n"
        f"\n"
        f"Your *{data['planName']}* plan is scheduled to renew on *{data['renewalDate']}*.\n"
        f"\n"
        f"The renewal amount will be *{data['amount']}*. "
        f"No action is needed if you wish to continue your subscription.\n"
        f"\n"
        f"You can manage your subscription settings in your account profile."
    )


DEFAULT_TEMPLATES: Dict[str, RenderFn] = {
    "welcome": welcome,
    "verificationCode": verification_code,
    "resetCode": reset_code,
    "orderStatus": order_status,
    "shippingUpdate": shipping_update,
    "passwordChangedNotice": password_changed_notice,
    "appointmentReminder": appointment_reminder,
    "invoiceGenerated": invoice_generated,
    "subscriptionRenewalReminder": subscription_renewal_reminder,
}
