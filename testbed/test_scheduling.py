import asyncio

from src.diagram_stream.continuation import ContinuationBuffer
from src.diagram_stream.scheduling import AsyncioScheduler, ManualScheduler


def test_manual_scheduler_fires_in_due_order():
    scheduler = ManualScheduler()
    fired = []

    scheduler.call_later(0.3, lambda: fired.append("late"))
    scheduler.call_later(0.1, lambda: fired.append("early"))
    cancelled = scheduler.call_later(0.2, lambda: fired.append("cancelled"))
    cancelled.cancel()

    assert scheduler.pending == 2
    assert scheduler.advance(0.2) == 1
    assert fired == ["early"]
    assert scheduler.advance(0.2) == 1
    assert fired == ["early", "late"]
    assert scheduler.pending == 0


def test_manual_scheduler_runs_timers_scheduled_by_callbacks():
    scheduler = ManualScheduler()
    fired = []

    def first():
        fired.append(scheduler.now)
        scheduler.call_later(0.5, lambda: fired.append(scheduler.now))

    scheduler.call_later(0.5, first)

    assert scheduler.run_all() == 2
    assert fired == [0.5, 1.0]


def test_asyncio_scheduler_uses_running_loop():
    fired = []

    async def main():
        handle = AsyncioScheduler().call_later(0.01, lambda: fired.append("ok"))
        skipped = AsyncioScheduler().call_later(0.01, lambda: fired.append("skipped"))
        skipped.cancel()
        await asyncio.sleep(0.05)
        return handle

    asyncio.run(main())

    assert fired == ["ok"]


def test_continuation_buffer_counts_retries():
    buffer = ContinuationBuffer(max_retries=2)
    assert buffer.active is False

    buffer.start("<a")
    assert buffer.combine(' id="1"') == '<a id="1"'
    assert buffer.record_incomplete('<a id="1"') is True
    assert buffer.partial == '<a id="1"'
    assert buffer.record_incomplete('<a id="1" b') is False
    assert buffer.active is False
