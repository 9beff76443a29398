import asyncio

import herald.__main__ as worker_main
from herald.worker.dispatcher import DispatchStats
from herald.worker.event_processor import EventSweepStats
from tests.fake_store import FakeStore, install


class FakeEventProcessor:
    def __init__(self) -> None:
        self.calls = 0

    async def run_once(self, *, limit=None) -> EventSweepStats:
        self.calls += 1
        return EventSweepStats(scanned=2, claimed=2, processed=2)


class FakeDispatcher:
    def __init__(self, channel: str, stats: DispatchStats | None = None, error: Exception | None = None) -> None:
        self.channel = channel
        self.stats = stats or DispatchStats(channel=channel)
        self.error = error
        self.calls = 0

    async def run_once(self, *, limit=None) -> DispatchStats:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.stats


def test_worker_tick_writes_heartbeat(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    processor = FakeEventProcessor()
    dispatchers = {
        "email": FakeDispatcher("email", DispatchStats(channel="email", scanned=3, claimed=3, sent=2, requeued=1)),
        "push": FakeDispatcher("push", error=RuntimeError("token=abc123 rejected")),
        "in_app": FakeDispatcher("in_app", DispatchStats(channel="in_app", scanned=1, claimed=1, failed=1)),
    }

    payload = asyncio.run(
        worker_main.run_worker_tick(processor, dispatchers, last_runs={}, heartbeat_enabled=True)
    )

    assert payload["events_processed"] == 2
    assert payload["jobs_sent"] == 2
    assert payload["jobs_requeued"] == 1
    assert payload["jobs_failed"] == 1
    assert payload["errors"] == 1
    assert set(payload["dispatch"]) == {"email", "in_app"}
    assert store.system_status["notification_worker"] == payload


def test_worker_tick_respects_intervals(monkeypatch) -> None:
    store = install(monkeypatch, FakeStore())
    processor = FakeEventProcessor()
    dispatchers = {"email": FakeDispatcher("email")}
    last_runs: dict[str, float] = {}
    clock = iter([1000.0, 1000.0, 1000.0, 1000.0, 1010.0, 1010.0])

    async def run_twice():
        for _ in range(2):
            await worker_main.run_worker_tick(
                processor,
                dispatchers,
                last_runs=last_runs,
                heartbeat_enabled=False,
                monotonic=lambda: next(clock),
            )

    asyncio.run(run_twice())

    assert processor.calls == 1
    assert dispatchers["email"].calls == 1
    assert store.system_status == {}
