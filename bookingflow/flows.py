from __future__ import annotations

"""
Step library and named flows for the booking wizard of the site under test.

The wizard walks service -> date/time -> contact -> payment -> summary, with
a shared ``#next-btn`` moving between panels. Selectors are the ones the site
has shipped with; alternatives are listed as fallbacks in the order they
should be tried.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from .errors import FlowDefinitionError
from .runner import Flow
from .steps import FlowStep, PostCondition, click, fill, select, wait_for_selector

NEXT_BUTTON = "#next-btn"
CONFIRM_BUTTON = "#confirm-booking-btn"
TIME_SELECT = "#booking-time"
AVAILABLE_TIME_OPTION = '#booking-time option:not([value=""])'

PAYMENT_SELECTORS: Dict[str, str] = {
    "cash": "#payment-method-cash",
    "credit_card": "#payment-method-card",
    "other": "#payment-method-other",
    "comp": "#payment-method-comp",
}

SUCCESS_CONDITIONS: Dict[str, PostCondition] = {
    "thank-you": PostCondition.visible("#thank-you-content"),
    "status-text": PostCondition.text_contains("#booking-status", "confirmed"),
    "modal-closed": PostCondition.hidden("#booking-modal"),
}
DEFAULT_SUCCESS = "thank-you"


@dataclass(frozen=True)
class Contact:
    name: str
    email: str
    phone: str
    notes: Optional[str] = None


TEST_CONTACT = Contact(
    name="Test User",
    email="test@example.com",
    phone="9405551234",
    notes="Automated test booking",
)


def select_service(service: str, *, retries: int = 1) -> FlowStep:
    """Pick a service card (``60min``, ``90min``, ``120min``...) and move on."""
    return click(
        f"select-service-{service}",
        f'[data-service-type="{service}_massage"]',
        fallbacks=(f'[data-service-type="{service}"]', f'[data-service="{service}"]'),
        advance=NEXT_BUTTON,
        retries=retries,
        timeout_ms=10_000,
    )


def pick_next_available_date(*, retries: int = 2) -> FlowStep:
    """Click the earliest day the calendar marks as available."""
    return click(
        "pick-next-available-date",
        ".calendar-day.available",
        fallbacks=("[data-date].available", ".calendar-day:not(.disabled):not(.past)"),
        retries=retries,
        timeout_ms=10_000,
    )


def pick_first_time_slot(*, retries: int = 2) -> FlowStep:
    """Choose the first real option once the slot list has been populated."""
    return select(
        "pick-first-time-slot",
        TIME_SELECT,
        "index:1",
        wait_for=AVAILABLE_TIME_OPTION,
        advance=NEXT_BUTTON,
        retries=retries,
        timeout_ms=8_000,
    )


def fill_contact(name: str, email: str, phone: str, notes: Optional[str] = None) -> FlowStep:
    fields: Tuple[Tuple[str, str], ...] = (
        ("#client-name", name),
        ("#client-email", email),
        ("#client-phone", phone),
    )
    if notes:
        fields += (("#session-notes", notes),)
    return fill(
        "fill-contact",
        "#contact-info",
        fallbacks=("#client-name",),
        fields=fields,
        advance=NEXT_BUTTON,
        retries=1,
        timeout_ms=10_000,
    )


def select_payment(method: str, *, advance: bool = True) -> FlowStep:
    try:
        selector = PAYMENT_SELECTORS[method]
    except KeyError:
        raise FlowDefinitionError(
            f"unknown payment method {method!r}; expected one of {', '.join(sorted(PAYMENT_SELECTORS))}"
        ) from None
    return click(
        f"select-payment-{method}",
        selector,
        fallbacks=(f'input[name="payment-method"][value="{method}"]',),
        advance=NEXT_BUTTON if advance else None,
        retries=1,
        timeout_ms=10_000,
    )


def confirm(success: str = DEFAULT_SUCCESS) -> FlowStep:
    """Submit the booking and wait for the flow's notion of success."""
    try:
        condition = SUCCESS_CONDITIONS[success]
    except KeyError:
        raise FlowDefinitionError(f"unknown success condition {success!r}") from None
    # Submitting twice would create a second booking.
    return click("confirm", CONFIRM_BUTTON, expect=condition, retries=0, timeout_ms=20_000)


def reach_payment_flow(service: str = "90min", contact: Contact = TEST_CONTACT) -> Flow:
    return Flow(
        name="reach-payment",
        description="Walk the wizard up to the payment panel",
        steps=(
            select_service(service),
            pick_next_available_date(),
            pick_first_time_slot(),
            fill_contact(contact.name, contact.email, contact.phone, contact.notes),
        ),
    )


def booking_flow(
    payment: str,
    *,
    service: str = "90min",
    contact: Contact = TEST_CONTACT,
    success: str = DEFAULT_SUCCESS,
    name: Optional[str] = None,
) -> Flow:
    """Complete a booking paid with ``payment`` (any method except card entry)."""
    return reach_payment_flow(service, contact).then(
        name or f"book-{payment.replace('_', '-')}",
        select_payment(payment),
        confirm(success),
        description=f"Book a {service} session paid with {payment}",
    )


def card_form_flow(service: str = "90min", contact: Contact = TEST_CONTACT) -> Flow:
    """Stop once the card form is mounted; card entry itself is not automated."""
    return reach_payment_flow(service, contact).then(
        "book-card",
        select_payment("credit_card", advance=False),
        wait_for_selector(
            "card-form-ready",
            "#stripe-card-element iframe",
            fallbacks=("#card-element iframe",),
            timeout_ms=15_000,
            retries=1,
        ),
        description="Reach the card payment form",
    )


def admin_bookings_flow() -> Flow:
    return Flow(
        name="admin-bookings",
        description="Open the admin bookings page and the new-booking modal",
        start_path="/admin",
        steps=(
            click(
                "open-bookings-page",
                '[data-page="bookings"]',
                expect=PostCondition.visible("#bookings-page"),
                retries=1,
            ),
            click(
                "open-new-booking-modal",
                "#new-booking-btn",
                expect=PostCondition.visible("#new-booking-modal"),
                retries=1,
            ),
        ),
    )


FLOW_BUILDERS: Dict[str, Callable[[], Flow]] = {
    "reach-payment": reach_payment_flow,
    "book-cash": lambda: booking_flow("cash"),
    "book-other": lambda: booking_flow("other"),
    "book-comp": lambda: booking_flow("comp"),
    "book-card": card_form_flow,
    "admin-bookings": admin_bookings_flow,
}


def get_flow(name: str) -> Flow:
    try:
        builder = FLOW_BUILDERS[name]
    except KeyError:
        raise FlowDefinitionError(
            f"unknown flow {name!r}; available: {', '.join(sorted(FLOW_BUILDERS))}"
        ) from None
    return builder()
