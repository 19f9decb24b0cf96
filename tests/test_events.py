from proofpay.core.events import LINK_ADDED, REQUEST_PAID, EventBus


async def test_subscribers_receive_named_and_global_events():
    bus = EventBus()
    named, everything = [], []

    async def on_paid(event):
        named.append(event.payload["request_id"])

    async def on_any(event):
        everything.append(event.name)

    bus.subscribe(REQUEST_PAID, on_paid)
    bus.subscribe_all(on_any)

    await bus.emit(REQUEST_PAID, request_id="r1")
    await bus.emit(LINK_ADDED, address="0x")

    assert named == ["r1"]
    assert everything == [REQUEST_PAID, LINK_ADDED]

    bus.unsubscribe(REQUEST_PAID, on_paid)
    await bus.emit(REQUEST_PAID, request_id="r2")
    assert named == ["r1"]


async def test_failing_subscriber_does_not_break_publish():
    bus = EventBus()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        seen.append(event.name)

    bus.subscribe(REQUEST_PAID, broken)
    bus.subscribe(REQUEST_PAID, healthy)

    event = await bus.emit(REQUEST_PAID, request_id="r1")

    assert seen == [REQUEST_PAID]
    assert bus.get_history() == [event]


async def test_history_is_bounded_and_filterable():
    bus = EventBus(history_limit=3)
    for i in range(5):
        await bus.emit(REQUEST_PAID if i % 2 else LINK_ADDED, n=i)

    assert [e.payload["n"] for e in bus.get_history()] == [2, 3, 4]
    assert [e.payload["n"] for e in bus.get_history(name=REQUEST_PAID)] == [3]
    assert [e.payload["n"] for e in bus.get_history(limit=1)] == [4]
