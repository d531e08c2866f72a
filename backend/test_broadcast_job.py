"""Mass fan-out: counts, single-flight, cancellation, snapshot failure."""
import asyncio

import pytest
from telegram.error import Forbidden

from vpnshop.core.exceptions import AlreadyRunning, UpstreamUnavailable
from vpnshop.core.rate_limiter import RateLimitedDispatcher
from vpnshop.flows.broadcast import BroadcastCoordinator, BroadcastPayload, PayloadKind


def coordinator(progress_every=100):
    return BroadcastCoordinator(lambda: RateLimitedDispatcher(interval_ms=0), progress_every=progress_every)


class Recorder:
    def __init__(self, fail=(), blocked=()):
        self.fail = set(fail)
        self.blocked = set(blocked)
        self.sent = []
        self.reports = []

    async def deliver(self, chat_id):
        if chat_id in self.blocked:
            raise Forbidden("bot was blocked by the user")
        if chat_id in self.fail:
            raise RuntimeError("boom")
        self.sent.append(chat_id)

    async def finish(self, report):
        self.reports.append(report)


@pytest.mark.asyncio
async def test_one_failure_does_not_abort():
    rec = Recorder(fail={2})
    coord = coordinator()
    handle = coord.launch("broadcast", 555, lambda: [1, 2, 3], rec.deliver, rec.finish)
    report = await handle.wait()

    assert (report.sent, report.failed, report.total) == (2, 1, 3)
    assert rec.sent == [1, 3], "Recipients are walked in snapshot order"
    assert len(rec.reports) == 1, "Exactly one summary"
    assert not coord.is_running, "Flag is released after completion"


@pytest.mark.asyncio
async def test_blocked_recipients_counted_as_unreachable():
    rec = Recorder(blocked={2, 3})
    handle = coordinator().launch("broadcast", 555, lambda: [1, 2, 3], rec.deliver, rec.finish)
    report = await handle.wait()
    assert report.failed == 2
    assert report.unreachable == 2


@pytest.mark.asyncio
async def test_zero_recipients_still_reports():
    rec = Recorder()
    coord = coordinator()
    handle = coord.launch("broadcast", 555, lambda: [], rec.deliver, rec.finish)
    report = await handle.wait()
    assert (report.sent, report.failed, report.total) == (0, 0, 0)
    assert len(rec.reports) == 1
    assert not coord.is_running


@pytest.mark.asyncio
async def test_second_launch_refused_while_running():
    gate = asyncio.Event()

    async def slow(chat_id):
        await gate.wait()

    async def finish(report):
        pass

    coord = coordinator()
    handle = coord.launch("broadcast", 555, lambda: [1], slow, finish)
    assert coord.is_running

    with pytest.raises(AlreadyRunning):
        coord.launch("flash_sale", 555, lambda: [1], slow, finish)

    gate.set()
    await handle.wait()
    assert not coord.is_running

    # free again
    again = coord.launch("broadcast", 555, lambda: [], slow, finish)
    await again.wait()


@pytest.mark.asyncio
async def test_cancel_stops_before_next_send():
    sent = []
    reports = []
    coord = coordinator()
    handle = None

    async def deliver(chat_id):
        sent.append(chat_id)
        if chat_id == 2:
            handle.cancel()

    async def finish(report):
        reports.append(report)

    handle = coord.launch("broadcast", 555, lambda: [1, 2, 3, 4], deliver, finish)
    report = await handle.wait()

    assert sent == [1, 2]
    assert report.cancelled
    assert report.sent == 2 and report.total == 4
    assert len(reports) == 1


@pytest.mark.asyncio
async def test_snapshot_failure_sends_nothing_and_releases_flag():
    rec = Recorder()
    started = []

    def broken_loader():
        raise RuntimeError("db down")

    coord = coordinator()
    with pytest.raises(UpstreamUnavailable):
        coord.launch("flash_sale", 555, broken_loader, rec.deliver, rec.finish, on_start=lambda: started.append(1))

    assert not coord.is_running
    assert started == [], "on_start runs only after a successful snapshot"
    assert rec.reports == []


@pytest.mark.asyncio
async def test_progress_reported_every_n_for_large_jobs():
    progress = []

    async def deliver(chat_id):
        pass

    async def on_progress(done, total):
        progress.append((done, total))

    async def finish(report):
        pass

    handle = coordinator(progress_every=5).launch(
        "broadcast", 555, lambda: list(range(12)), deliver, finish, on_progress=on_progress,
    )
    await handle.wait()
    assert progress == [(5, 12), (10, 12)]


@pytest.mark.asyncio
async def test_rate_limiter_spaces_sends():
    ticks = iter([0.0, 0.0, 0.0])
    limiter = RateLimitedDispatcher(interval_ms=50, clock=lambda: next(ticks))
    await limiter.wait()
    assert limiter._next_slot == pytest.approx(0.05)


def test_payload_from_message_prefers_media():
    class Photo:
        file_id = "big"

    class Msg:
        text = None
        caption = "hi"
        photo = [Photo()]
        document = None
        video = None

    payload = BroadcastPayload.from_message(Msg())
    assert payload.kind == PayloadKind.PHOTO
    assert payload.file_id == "big"
    assert payload.text == "hi"
