import asyncio

import pytest

from watch_supervisor import WatchCategory, WatchSupervisor, WatchState, above_threshold
from fakes import FakeSubscriber, amount_item, wait_until

BACKOFF = 0.05


async def passthrough(raw):
    if isinstance(raw, Exception):
        raise raw
    return [raw]


def make_category(subscriber, minimum=100.0, record=None):
    return WatchCategory(
        name="delegate",
        subscribe=subscriber,
        collect=passthrough,
        format=lambda item: f"amount {item.amount}",
        accept=above_threshold(lambda item: item.amount, minimum),
        record=record,
    )


async def stop_and_join(stop, task):
    stop.set()
    await asyncio.wait_for(task, timeout=2)


@pytest.mark.asyncio
async def test_threshold_is_strictly_greater():
    subscriber = FakeSubscriber()
    sent, recorded = [], []
    supervisor = WatchSupervisor(make_category(subscriber, record=recorded.append), sent.append, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    subscription = subscriber.subscriptions[0]
    for amount in (150, 100, 50, 200):
        subscription.queue.put_nowait(amount_item(amount))

    await wait_until(lambda: len(sent) == 2)
    assert sent == ["amount 150", "amount 200"]
    assert [item.amount for item in recorded] == [150, 200]
    assert supervisor.state == WatchState.LISTENING

    await stop_and_join(stop, task)


@pytest.mark.asyncio
async def test_stream_error_backs_off_and_resubscribes():
    subscriber = FakeSubscriber()
    sent = []
    supervisor = WatchSupervisor(make_category(subscriber), sent.append, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    first = subscriber.subscriptions[0]
    failed_at = asyncio.get_running_loop().time()
    first.fail(ConnectionError("socket dropped"))

    await wait_until(lambda: len(subscriber.subscriptions) == 2)
    assert first.closed
    assert supervisor.resubscribe_count == 1
    assert subscriber.call_times[1] - failed_at >= BACKOFF - 0.01

    subscriber.subscriptions[1].queue.put_nowait(amount_item(500))
    await wait_until(lambda: len(sent) == 1)
    await asyncio.sleep(BACKOFF)
    assert sent == ["amount 500"]

    await stop_and_join(stop, task)


@pytest.mark.asyncio
async def test_failed_subscribe_retries_without_limit():
    subscriber = FakeSubscriber(failures=3)
    supervisor = WatchSupervisor(make_category(subscriber), lambda message: None, backoff_seconds=0.01)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    assert subscriber.calls == 4
    assert supervisor.resubscribe_count == 3
    await wait_until(lambda: supervisor.state == WatchState.LISTENING)

    await stop_and_join(stop, task)


@pytest.mark.asyncio
async def test_events_delivered_before_error_are_processed():
    subscriber = FakeSubscriber()
    sent = []
    supervisor = WatchSupervisor(make_category(subscriber), sent.append, backoff_seconds=BACKOFF)
    stop = asyncio.Event()

    async def preload():
        subscription = await subscriber()
        if subscriber.calls == 1:
            subscription.queue.put_nowait(amount_item(300))
            subscription.fail(ConnectionError("gone"))
        return subscription

    supervisor.category.subscribe = preload
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: sent)
    assert sent == ["amount 300"]
    await wait_until(lambda: len(subscriber.subscriptions) == 2)
    assert sent == ["amount 300"]
    await stop_and_join(stop, task)


@pytest.mark.asyncio
async def test_stop_closes_subscription():
    subscriber = FakeSubscriber()
    supervisor = WatchSupervisor(make_category(subscriber), lambda message: None, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    await stop_and_join(stop, task)

    assert subscriber.subscriptions[0].closed
    assert supervisor.state == WatchState.STOPPED


@pytest.mark.asyncio
async def test_stop_interrupts_backoff():
    subscriber = FakeSubscriber(failures=1000)
    supervisor = WatchSupervisor(make_category(subscriber), lambda message: None, backoff_seconds=30)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: supervisor.state == WatchState.BACKOFF)
    await stop_and_join(stop, task)

    assert subscriber.calls == 1
    assert supervisor.state == WatchState.STOPPED


@pytest.mark.asyncio
async def test_stop_interrupts_pending_subscribe():
    cancelled = []

    async def slow_subscribe():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise

    category = make_category(FakeSubscriber())
    category.subscribe = slow_subscribe
    supervisor = WatchSupervisor(category, lambda message: None, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: supervisor.state == WatchState.SUBSCRIBING)
    await asyncio.sleep(0.05)
    await stop_and_join(stop, task)

    assert cancelled == [True]
    assert supervisor.resubscribe_count == 0
    assert supervisor.state == WatchState.STOPPED


@pytest.mark.asyncio
async def test_subscription_opened_as_stop_arrives_is_closed():
    subscriber = FakeSubscriber()
    stop = asyncio.Event()

    async def subscribe_then_stop():
        subscription = await subscriber()
        stop.set()
        return subscription

    category = make_category(subscriber)
    category.subscribe = subscribe_then_stop
    supervisor = WatchSupervisor(category, lambda message: None, backoff_seconds=BACKOFF)

    await asyncio.wait_for(supervisor.run(stop), timeout=2)

    assert subscriber.subscriptions[0].closed
    assert supervisor.state == WatchState.STOPPED


@pytest.mark.asyncio
async def test_task_cancellation_stops_supervisor():
    subscriber = FakeSubscriber()
    supervisor = WatchSupervisor(make_category(subscriber), lambda message: None, backoff_seconds=BACKOFF)
    task = asyncio.create_task(supervisor.run(asyncio.Event()))

    await wait_until(lambda: subscriber.subscriptions)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert supervisor.state == WatchState.STOPPED
    assert subscriber.subscriptions[0].closed


@pytest.mark.asyncio
async def test_decode_failure_drops_item_and_keeps_listening():
    subscriber = FakeSubscriber()
    sent = []
    supervisor = WatchSupervisor(make_category(subscriber), sent.append, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    subscription = subscriber.subscriptions[0]
    subscription.queue.put_nowait(ValueError("bad log"))
    subscription.queue.put_nowait(amount_item(1000))

    await wait_until(lambda: sent)
    assert sent == ["amount 1000"]
    assert len(subscriber.subscriptions) == 1
    assert not subscription.closed

    await stop_and_join(stop, task)


@pytest.mark.asyncio
async def test_notification_failure_does_not_break_loop():
    subscriber = FakeSubscriber()
    sent = []

    def flaky_notify(message):
        if not sent:
            sent.append(None)
            raise RuntimeError("telegram down")
        sent.append(message)

    supervisor = WatchSupervisor(make_category(subscriber), flaky_notify, backoff_seconds=BACKOFF)
    stop = asyncio.Event()
    task = asyncio.create_task(supervisor.run(stop))

    await wait_until(lambda: subscriber.subscriptions)
    subscription = subscriber.subscriptions[0]
    subscription.queue.put_nowait(amount_item(101))
    subscription.queue.put_nowait(amount_item(102))

    await wait_until(lambda: len(sent) == 2)
    assert sent[1] == "amount 102"
    assert supervisor.notified_count == 1
    assert supervisor.state == WatchState.LISTENING

    await stop_and_join(stop, task)
