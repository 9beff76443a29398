"""Event catalogue for the notification pipeline.

Every business occurrence a producer may emit is listed in ``EventType``
and has exactly one payload schema in ``EVENT_PAYLOAD_MODELS``. Payloads
are validated against that schema before anything is written, so unknown
types and malformed payloads are rejected at ingestion, never at dispatch.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, get_args

from pydantic import BaseModel, ConfigDict, Field, HttpUrl, StringConstraints, ValidationError

EventType = Literal[
    "Auction.Outbid",
    "Auction.HighBidder",
    "Auction.EndingSoon",
    "Auction.Won",
    "Auction.Lost",
    "Listing.Approved",
    "Listing.Rejected",
    "Order.Approved",
    "Order.Confirmed",
    "Order.InTransit",
    "Order.DeliveryConfirmed",
    "Payout.Released",
    "Message.Received",
    "Offer.Received",
    "Offer.Accepted",
    "User.Welcome",
    "Marketing.SavedSearchAlert",
]
EntityType = Literal["listing", "order", "user", "message_thread", "offer", "system"]
Channel = Literal["email", "push", "in_app"]
EventStatus = Literal["pending", "processing", "processed", "failed"]
JobStatus = Literal["queued", "processing", "sent", "skipped", "failed"]
DeadLetterKind = Literal["event", "email", "push", "in_app"]

EVENT_TYPES: tuple[str, ...] = get_args(EventType)
ENTITY_TYPES: tuple[str, ...] = get_args(EntityType)
CHANNELS: tuple[str, ...] = get_args(Channel)
DEAD_LETTER_KINDS: tuple[str, ...] = get_args(DeadLetterKind)

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Amount = Annotated[float, Field(ge=0, allow_inf_nan=False)]


class EventValidationError(ValueError):
    pass


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


class _ListingPayload(_Payload):
    listing_id: NonEmptyStr
    listing_title: NonEmptyStr
    listing_url: HttpUrl


class AuctionOutbidPayload(_ListingPayload):
    new_high_bid_amount: Amount
    ends_at: str | None = None


class AuctionHighBidderPayload(_ListingPayload):
    your_bid_amount: Amount
    current_bid_amount: Amount
    ends_at: str | None = None


class AuctionEndingSoonPayload(_ListingPayload):
    threshold: Literal["24h", "1h", "10m", "2m"]
    ends_at: NonEmptyStr
    current_bid_amount: Amount | None = None


class AuctionWonPayload(_ListingPayload):
    winning_bid_amount: Amount
    checkout_url: HttpUrl | None = None


class AuctionLostPayload(_ListingPayload):
    final_bid_amount: Amount | None = None


class ListingApprovedPayload(_ListingPayload):
    pass


class ListingRejectedPayload(_Payload):
    listing_id: NonEmptyStr
    listing_title: NonEmptyStr
    edit_url: HttpUrl
    reason: str | None = None


class _OrderPayload(_Payload):
    order_id: NonEmptyStr
    listing_id: NonEmptyStr
    listing_title: NonEmptyStr
    order_url: HttpUrl


class OrderApprovedPayload(_OrderPayload):
    pass


class OrderConfirmedPayload(_OrderPayload):
    amount: Amount


class OrderInTransitPayload(_OrderPayload):
    pass


class OrderDeliveryConfirmedPayload(_OrderPayload):
    delivery_date: NonEmptyStr


class PayoutReleasedPayload(_OrderPayload):
    amount: Amount
    transfer_id: NonEmptyStr
    payout_date: NonEmptyStr


class MessageReceivedPayload(_Payload):
    thread_id: NonEmptyStr
    listing_id: NonEmptyStr
    listing_title: NonEmptyStr
    thread_url: HttpUrl
    sender_role: Literal["buyer", "seller"]
    preview: str | None = Field(default=None, max_length=280)


class _OfferPayload(_Payload):
    offer_id: NonEmptyStr
    listing_id: NonEmptyStr
    listing_title: NonEmptyStr
    offer_url: HttpUrl
    amount: Amount


class OfferReceivedPayload(_OfferPayload):
    expires_at: str | None = None


class OfferAcceptedPayload(_OfferPayload):
    pass


class UserWelcomePayload(_Payload):
    dashboard_url: HttpUrl


class ChannelOverride(_Payload):
    in_app: bool | None = None
    email: bool | None = None
    push: bool | None = None


class SavedSearchAlertPayload(_Payload):
    query_name: NonEmptyStr
    results_count: int = Field(ge=1)
    search_url: HttpUrl
    unsubscribe_url: HttpUrl | None = None
    channels: ChannelOverride | None = None


EVENT_PAYLOAD_MODELS: dict[str, type[_Payload]] = {
    "Auction.Outbid": AuctionOutbidPayload,
    "Auction.HighBidder": AuctionHighBidderPayload,
    "Auction.EndingSoon": AuctionEndingSoonPayload,
    "Auction.Won": AuctionWonPayload,
    "Auction.Lost": AuctionLostPayload,
    "Listing.Approved": ListingApprovedPayload,
    "Listing.Rejected": ListingRejectedPayload,
    "Order.Approved": OrderApprovedPayload,
    "Order.Confirmed": OrderConfirmedPayload,
    "Order.InTransit": OrderInTransitPayload,
    "Order.DeliveryConfirmed": OrderDeliveryConfirmedPayload,
    "Payout.Released": PayoutReleasedPayload,
    "Message.Received": MessageReceivedPayload,
    "Offer.Received": OfferReceivedPayload,
    "Offer.Accepted": OfferAcceptedPayload,
    "User.Welcome": UserWelcomePayload,
    "Marketing.SavedSearchAlert": SavedSearchAlertPayload,
}


def validate_event_payload(event_type: str, payload: Any) -> dict[str, Any]:
    """Return the normalized JSON form of ``payload`` or raise EventValidationError."""
    model = EVENT_PAYLOAD_MODELS.get(event_type)
    if model is None:
        raise EventValidationError(f"Unknown event type: {event_type}")
    if not isinstance(payload, dict):
        raise EventValidationError(f"Payload for {event_type} must be an object.")
    try:
        parsed = model.model_validate(payload)
    except ValidationError as exc:
        fields = sorted({".".join(str(part) for part in error["loc"]) for error in exc.errors()})
        raise EventValidationError(
            f"Invalid payload for {event_type}: {', '.join(fields) or 'payload'}"
        ) from exc
    return parsed.model_dump(mode="json", exclude_none=True)
