import asyncio
import json

import pytest

from letterboxd_ingest.errors import JobCancelled, JobTimeout, PartialPageFailure
from letterboxd_ingest.progress import SSE_HEADERS, EventType, ProgressChannel, ProgressEvent


async def collect(channel):
    return [event async for event in channel.events()]


@pytest.mark.asyncio
async def test_events_arrive_in_emission_order():
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    consumer = asyncio.create_task(collect(channel))

    channel.emit(EventType.INIT, "Starting")
    channel.emit(EventType.PAGE_START, "Page 2", current_page=2)
    channel.emit(EventType.PAGE_COMPLETE, "Page 2 done", current_page=2)
    channel.complete("Done", total_films=40)

    events = await asyncio.wait_for(consumer, timeout=1)

    assert [e.type for e in events] == [
        EventType.INIT, EventType.PAGE_START, EventType.PAGE_COMPLETE, EventType.COMPLETE,
    ]
    assert events[1].data == {"current_page": 2}
    assert events[-1].is_terminal


@pytest.mark.asyncio
async def test_writes_after_terminal_event_are_dropped():
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()

    assert channel.fail(PartialPageFailure(3, 5)) is True
    assert channel.emit(EventType.PAGE_START, "too late") is False
    assert channel.complete("also too late") is False

    assert channel.dropped == 2
    assert [e.type for e in channel.history] == [EventType.ERROR]
    assert channel.history[0].data["code"] == "PARTIAL_PAGE_FAILURE"


@pytest.mark.asyncio
async def test_fail_reports_unknown_errors_without_code():
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    channel.fail(KeyError("x"))

    event = channel.history[-1]
    assert event.data["code"] is None
    assert event.message.startswith("Unexpected error")


@pytest.mark.asyncio
async def test_heartbeat_fires_when_idle():
    channel = ProgressChannel(heartbeat_interval=0.05, job_timeout=None).open()

    await asyncio.sleep(0.2)
    channel.complete("Done")

    heartbeats = [e for e in channel.history if e.type is EventType.HEARTBEAT]
    assert heartbeats
    assert "elapsed" in heartbeats[0].data
    assert channel.history[-1].type is EventType.COMPLETE


@pytest.mark.asyncio
async def test_deadline_emits_timeout_and_cancels():
    reasons = []
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=0.05).open()
    channel.on_cancel(reasons.append)

    await asyncio.sleep(0.15)

    assert reasons == ["timeout"]
    assert channel.cancelled
    assert channel.history[-1].type is EventType.ERROR
    assert channel.history[-1].data["code"] == "JOB_TIMEOUT"
    with pytest.raises(JobTimeout):
        channel.raise_if_cancelled()


@pytest.mark.asyncio
async def test_disconnect_stops_writes_and_signals_cancel():
    reasons = []
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    channel.on_cancel(reasons.append)
    channel.emit(EventType.INIT, "Starting")

    channel.disconnect()
    channel.disconnect()

    assert channel.emit(EventType.PAGE_START, "Page 2") is False
    assert reasons == ["disconnect"]
    with pytest.raises(JobCancelled):
        channel.raise_if_cancelled()


@pytest.mark.asyncio
async def test_disconnect_after_terminal_does_not_cancel():
    reasons = []
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    channel.on_cancel(reasons.append)
    channel.complete("Done")

    channel.disconnect()

    assert reasons == []
    channel.raise_if_cancelled()


@pytest.mark.asyncio
async def test_single_consumer_only():
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    first = channel.events()
    channel.emit(EventType.INIT, "Starting")
    assert (await first.__anext__()).type is EventType.INIT

    with pytest.raises(RuntimeError):
        await channel.events().__anext__()
    channel.close()


@pytest.mark.asyncio
async def test_close_without_terminal_releases_consumer():
    channel = ProgressChannel(heartbeat_interval=None, job_timeout=None).open()
    consumer = asyncio.create_task(collect(channel))
    channel.emit(EventType.INIT, "Starting")

    channel.close()

    events = await asyncio.wait_for(consumer, timeout=1)
    assert [e.type for e in events] == [EventType.INIT]


def test_event_serialization():
    event = ProgressEvent(EventType.PAGE_COMPLETE, "Page 2 of 3 complete", {"current_page": 2, "progress": 67})

    frame = event.to_sse()
    assert frame.startswith("data: ")
    assert frame.endswith("\n\n")

    payload = json.loads(frame[len("data: "):])
    assert payload["type"] == "page_complete"
    assert payload["message"] == "Page 2 of 3 complete"
    assert payload["current_page"] == 2
    assert payload["progress"] == 67
    assert "timestamp" in payload

    assert SSE_HEADERS["Content-Type"] == "text/event-stream"
