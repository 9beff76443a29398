import asyncio
from datetime import UTC, datetime

from herald.worker.suppressor import is_escalation_job, should_suppress
from tests.fake_store import FakeStore, install, make_job

NOW = datetime(2026, 3, 1, 12, 30, tzinfo=UTC)
OUTBID_PAYLOAD = {
    "listing_id": "listing-1",
    "listing_title": "Vintage Saddle",
    "listing_url": "https://market.example.com/listings/listing-1",
    "new_high_bid_amount": 150,
}


def _escalation_job() -> dict[str, object]:
    return make_job("email", template="auction_outbid", template_payload=OUTBID_PAYLOAD)


def _feed_entry(**fields: object) -> dict[str, object]:
    return {"id": "feed-1", "user_id": "user-1", "event_id": "event-1", **fields}


def test_only_delayed_auction_emails_are_escalations() -> None:
    assert is_escalation_job(_escalation_job()) is True
    assert is_escalation_job(make_job("email", template="auction_high_bidder")) is True
    assert is_escalation_job(make_job("email")) is False
    assert is_escalation_job(make_job("push", template="auction_outbid")) is False


def test_click_suppresses_but_read_does_not(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())

    store.in_app_notifications["feed-1"] = _feed_entry(read_at="2026-03-01T12:10:00Z")
    assert asyncio.run(should_suppress(_escalation_job(), NOW)) is False

    store.in_app_notifications["feed-1"] = _feed_entry(
        read_at="2026-03-01T12:10:00Z",
        clicked_at="2026-03-01T12:11:00Z",
    )
    assert asyncio.run(should_suppress(_escalation_job(), NOW)) is True


def test_click_after_now_does_not_suppress(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    store.in_app_notifications["feed-1"] = _feed_entry(clicked_at="2026-03-01T13:00:00Z")

    assert asyncio.run(should_suppress(_escalation_job(), NOW)) is False


def test_non_escalation_job_never_consults_feed(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    store.fail_in_app_lookup = True
    store.in_app_notifications["feed-1"] = _feed_entry(clicked_at="2026-03-01T12:11:00Z")

    assert asyncio.run(should_suppress(make_job("email"), NOW)) is False


def test_lookup_failure_fails_open(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    store.fail_in_app_lookup = True

    assert asyncio.run(should_suppress(_escalation_job(), NOW)) is False
