from __future__ import annotations

from dataclasses import dataclass
from html import escape
from typing import Any

from herald.notifications.types import EVENT_PAYLOAD_MODELS, EventValidationError, validate_event_payload

TEMPLATE_EVENT_TYPES: dict[str, str] = {
    "auction_outbid": "Auction.Outbid",
    "auction_high_bidder": "Auction.HighBidder",
    "auction_ending_soon": "Auction.EndingSoon",
    "auction_won": "Auction.Won",
    "auction_lost": "Auction.Lost",
    "listing_approved": "Listing.Approved",
    "listing_rejected": "Listing.Rejected",
    "order_approved": "Order.Approved",
    "order_confirmed": "Order.Confirmed",
    "order_in_transit": "Order.InTransit",
    "order_delivery_confirmed": "Order.DeliveryConfirmed",
    "payout_released": "Payout.Released",
    "message_received": "Message.Received",
    "offer_received": "Offer.Received",
    "offer_accepted": "Offer.Accepted",
    "user_welcome": "User.Welcome",
    "saved_search_alert": "Marketing.SavedSearchAlert",
}
EVENT_TEMPLATES: dict[str, str] = {event_type: tag for tag, event_type in TEMPLATE_EVENT_TYPES.items()}

_PUSH_BODY_LIMIT = 180


class TemplateValidationError(ValueError):
    error_code = "invalid_payload"


@dataclass(frozen=True)
class NotificationContent:
    title: str
    body: str
    url: str
    cta_label: str


def template_for_event(event_type: str) -> str:
    tag = EVENT_TEMPLATES.get(event_type)
    if tag is None:
        raise TemplateValidationError(f"No template registered for {event_type}")
    return tag


def validate_template_payload(template: str, payload: Any) -> dict[str, Any]:
    event_type = TEMPLATE_EVENT_TYPES.get(template)
    if event_type is None or event_type not in EVENT_PAYLOAD_MODELS:
        raise TemplateValidationError(f"Unknown template: {template}")
    try:
        return validate_event_payload(event_type, payload)
    except EventValidationError as exc:
        raise TemplateValidationError(str(exc).replace(event_type, template)) from exc


def _money(value: Any) -> str:
    try:
        return f"${float(value):,.2f}"
    except (TypeError, ValueError):
        return "$0.00"


def _content(template: str, payload: dict[str, Any]) -> NotificationContent:
    title = str(payload.get("listing_title") or "")
    if template == "auction_outbid":
        return NotificationContent(
            "You've been outbid",
            f"Someone bid {_money(payload['new_high_bid_amount'])} on {title}.",
            payload["listing_url"],
            "Bid again",
        )
    if template == "auction_high_bidder":
        return NotificationContent(
            "You're the high bidder",
            f"Your bid of {_money(payload['your_bid_amount'])} leads on {title}.",
            payload["listing_url"],
            "View auction",
        )
    if template == "auction_ending_soon":
        return NotificationContent(
            "Auction ending soon",
            f"{title} ends in {payload['threshold']}.",
            payload["listing_url"],
            "View auction",
        )
    if template == "auction_won":
        return NotificationContent(
            "You won the auction",
            f"You won {title} at {_money(payload['winning_bid_amount'])}.",
            payload.get("checkout_url") or payload["listing_url"],
            "Complete checkout",
        )
    if template == "auction_lost":
        return NotificationContent(
            "Auction ended",
            f"{title} sold to another bidder.",
            payload["listing_url"],
            "Find similar listings",
        )
    if template == "listing_approved":
        return NotificationContent(
            "Listing approved",
            f"{title} is now live.",
            payload["listing_url"],
            "View listing",
        )
    if template == "listing_rejected":
        reason = str(payload.get("reason") or "").strip()
        body = f"{title} needs changes before it can go live."
        if reason:
            body = f"{body} Reason: {reason}"
        return NotificationContent("Listing needs changes", body, payload["edit_url"], "Edit listing")
    if template == "order_approved":
        return NotificationContent(
            "Order approved",
            f"Your order for {title} was approved.",
            payload["order_url"],
            "View order",
        )
    if template == "order_confirmed":
        return NotificationContent(
            "Order confirmed",
            f"Your order for {title} ({_money(payload['amount'])}) is confirmed.",
            payload["order_url"],
            "View order",
        )
    if template == "order_in_transit":
        return NotificationContent(
            "Order in transit",
            f"{title} is on its way.",
            payload["order_url"],
            "Track order",
        )
    if template == "order_delivery_confirmed":
        return NotificationContent(
            "Delivery confirmed",
            f"{title} was delivered on {payload['delivery_date']}.",
            payload["order_url"],
            "View order",
        )
    if template == "payout_released":
        return NotificationContent(
            "Payout released",
            f"{_money(payload['amount'])} for {title} was released on {payload['payout_date']}.",
            payload["order_url"],
            "View payout",
        )
    if template == "message_received":
        preview = str(payload.get("preview") or "").strip()
        sender = "buyer" if payload.get("sender_role") == "buyer" else "seller"
        body = f"New message from the {sender} about {title}."
        if preview:
            body = f"{body} \"{preview}\""
        return NotificationContent("New message", body, payload["thread_url"], "Reply")
    if template == "offer_received":
        return NotificationContent(
            "New offer",
            f"You received an offer of {_money(payload['amount'])} on {title}.",
            payload["offer_url"],
            "Review offer",
        )
    if template == "offer_accepted":
        return NotificationContent(
            "Offer accepted",
            f"Your offer of {_money(payload['amount'])} on {title} was accepted.",
            payload["offer_url"],
            "Complete purchase",
        )
    if template == "user_welcome":
        return NotificationContent(
            "Welcome aboard",
            "Your account is ready. Browse listings, place bids and track orders from your dashboard.",
            payload["dashboard_url"],
            "Open dashboard",
        )
    if template == "saved_search_alert":
        count = int(payload["results_count"])
        noun = "listing" if count == 1 else "listings"
        return NotificationContent(
            f"New matches for {payload['query_name']}",
            f"{count} new {noun} match your saved search.",
            payload["search_url"],
            "See results",
        )
    raise TemplateValidationError(f"Unknown template: {template}")


def render_in_app(template: str, payload: dict[str, Any]) -> dict[str, str]:
    validated = validate_template_payload(template, payload)
    content = _content(template, validated)
    return {"title": content.title, "body": content.body, "url": content.url}


def render_push(template: str, payload: dict[str, Any]) -> dict[str, str]:
    validated = validate_template_payload(template, payload)
    content = _content(template, validated)
    body = content.body
    if len(body) > _PUSH_BODY_LIMIT:
        body = body[: _PUSH_BODY_LIMIT - 3].rstrip() + "..."
    return {"title": content.title, "body": body, "url": content.url}


def render_email(
    template: str,
    payload: dict[str, Any],
    *,
    recipient_name: str | None = None,
) -> dict[str, str]:
    validated = validate_template_payload(template, payload)
    content = _content(template, validated)
    greeting = f"Hi {recipient_name.strip()}," if recipient_name and recipient_name.strip() else "Hi,"

    text = "\n".join(
        [
            greeting,
            "",
            content.body,
            "",
            f"{content.cta_label}: {content.url}",
        ]
    )
    unsubscribe_url = validated.get("unsubscribe_url")
    if unsubscribe_url:
        text = f"{text}\n\nUnsubscribe: {unsubscribe_url}"

    footer_html = (
        f'<p><a href="{escape(unsubscribe_url, quote=True)}">Unsubscribe</a></p>' if unsubscribe_url else ""
    )
    html = (
        "<html><body>"
        f"<p>{escape(greeting)}</p>"
        f"<p>{escape(content.body)}</p>"
        f'<p><a href="{escape(content.url, quote=True)}">{escape(content.cta_label)}</a></p>'
        f"{footer_html}"
        "</body></html>"
    )
    return {"subject": content.title, "html": html, "text": text}
