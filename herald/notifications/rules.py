"""Per-event delivery rules and the channel decision for one recipient.

The enabled channels for a recipient are the intersection of what the
event's rule allows, what the user enabled per channel, and the user's
toggle for the event's category. Push and email are held until the end of
the user's quiet hours unless the rule allows delivery during them, and
frequent auction events delay their email so in-app engagement can make it
unnecessary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from herald.notifications.preferences import NotificationPreferences

Urgency = Literal["low", "normal", "high", "critical"]

_ALL_CHANNELS = ("in_app", "push", "email")
_FEED_PUSH_EMAIL = ("in_app", "push", "email")
_FEED_EMAIL = ("in_app", "email")

EMAIL_ESCALATION_DELAY_SECONDS = {
    "Auction.Outbid": 5 * 60,
    "Auction.HighBidder": 30 * 60,
}


@dataclass(frozen=True)
class EventRule:
    category: str
    urgency: Urgency
    channels: tuple[str, ...]
    allow_during_quiet_hours: bool = True


@dataclass
class ChannelDecision:
    enabled: bool
    deliver_after_seconds: int | None = None
    reason: str | None = None


@dataclass
class RuleDecision:
    allow: bool
    category: str
    urgency: Urgency
    channels: dict[str, ChannelDecision] = field(default_factory=dict)
    suppressed_reason: str | None = None

    def enabled_channels(self) -> list[str]:
        return [name for name in _ALL_CHANNELS if self.channels.get(name, ChannelDecision(False)).enabled]


_RULES: dict[str, EventRule] = {
    "Auction.Outbid": EventRule("auctions", "high", _FEED_PUSH_EMAIL, allow_during_quiet_hours=False),
    "Auction.HighBidder": EventRule("auctions", "normal", _FEED_PUSH_EMAIL, allow_during_quiet_hours=False),
    "Auction.Won": EventRule("auctions", "critical", _FEED_PUSH_EMAIL),
    "Auction.Lost": EventRule("auctions", "normal", _FEED_EMAIL),
    "Listing.Approved": EventRule("listings", "normal", ("in_app",)),
    "Listing.Rejected": EventRule("listings", "normal", ("in_app",)),
    "Order.Approved": EventRule("orders", "normal", _FEED_EMAIL),
    "Order.Confirmed": EventRule("orders", "normal", _FEED_EMAIL),
    "Order.InTransit": EventRule("orders", "normal", _FEED_EMAIL),
    "Order.DeliveryConfirmed": EventRule("orders", "normal", _FEED_EMAIL),
    "Payout.Released": EventRule("orders", "normal", _FEED_EMAIL),
    "Message.Received": EventRule("messages", "normal", _FEED_PUSH_EMAIL),
    "Offer.Received": EventRule("offers", "normal", _FEED_EMAIL),
    "Offer.Accepted": EventRule("offers", "high", _FEED_PUSH_EMAIL),
    "User.Welcome": EventRule("onboarding", "low", _FEED_EMAIL),
    "Marketing.SavedSearchAlert": EventRule("marketing", "low", _FEED_PUSH_EMAIL),
}

_ENDING_SOON_URGENCY: dict[str, Urgency] = {"2m": "critical", "10m": "high", "1h": "normal"}


def get_event_rule(event_type: str, payload: dict[str, Any] | None = None) -> EventRule:
    if event_type == "Auction.EndingSoon":
        threshold = str((payload or {}).get("threshold") or "")
        urgency = _ENDING_SOON_URGENCY.get(threshold, "low")
        return EventRule(
            "auctions",
            urgency,
            _FEED_PUSH_EMAIL,
            allow_during_quiet_hours=urgency == "critical",
        )
    rule = _RULES.get(event_type)
    if rule is None:
        return EventRule("orders", "normal", ("in_app",))
    return rule


def email_escalation_delay_seconds(event_type: str) -> int:
    return EMAIL_ESCALATION_DELAY_SECONDS.get(event_type, 0)


def is_quiet_hours(now: datetime, prefs: NotificationPreferences) -> bool:
    quiet = prefs.quiet_hours
    if not quiet.enabled or quiet.start_hour == quiet.end_hour:
        return False
    hour = now.astimezone(ZoneInfo(prefs.timezone)).hour
    if quiet.start_hour > quiet.end_hour:
        return hour >= quiet.start_hour or hour < quiet.end_hour
    return quiet.start_hour <= hour < quiet.end_hour


def seconds_until_quiet_hours_end(now: datetime, prefs: NotificationPreferences) -> int:
    zone = ZoneInfo(prefs.timezone)
    local_now = now.astimezone(zone)
    end = local_now.replace(hour=prefs.quiet_hours.end_hour, minute=0, second=0, microsecond=0)
    if end <= local_now:
        end = (end.replace(tzinfo=None) + timedelta(days=1)).replace(tzinfo=zone)
    return max(0, int((end.astimezone(UTC) - now.astimezone(UTC)).total_seconds()))


def decide_channels(
    event_type: str,
    payload: dict[str, Any],
    prefs: NotificationPreferences,
    now: datetime,
) -> RuleDecision:
    rule = get_event_rule(event_type, payload)

    if not prefs.category_enabled(rule.category):
        return RuleDecision(
            allow=False,
            category=rule.category,
            urgency=rule.urgency,
            channels={name: ChannelDecision(False, reason="disabled_by_prefs") for name in _ALL_CHANNELS},
            suppressed_reason="category_disabled",
        )

    quiet_delay: int | None = None
    if not rule.allow_during_quiet_hours and is_quiet_hours(now, prefs):
        quiet_delay = seconds_until_quiet_hours_end(now, prefs)

    channels: dict[str, ChannelDecision] = {}
    for name in _ALL_CHANNELS:
        if name not in rule.channels:
            channels[name] = ChannelDecision(False, reason="not_in_rule")
            continue
        if not prefs.channel_enabled(name):
            channels[name] = ChannelDecision(False, reason=f"{name}_disabled")
            continue
        delay = quiet_delay if name != "in_app" else None
        if name == "email":
            escalation = email_escalation_delay_seconds(event_type)
            if escalation or delay:
                delay = max(delay or 0, escalation)
        channels[name] = ChannelDecision(True, deliver_after_seconds=delay or None)

    override = payload.get("channels")
    if isinstance(override, dict):
        for name in _ALL_CHANNELS:
            if override.get(name) is False:
                channels[name] = ChannelDecision(False, reason="event_channel_disabled")

    allow = any(decision.enabled for decision in channels.values())
    return RuleDecision(
        allow=allow,
        category=rule.category,
        urgency=rule.urgency,
        channels=channels,
        suppressed_reason=None if allow else "no_enabled_channels",
    )
