import asyncio

from ridehail.services import Actor
from ridehail.services.subscriptions import SubscriptionHub

from conftest import make_driver, request_ride


async def test_snapshots_arrive_in_order():
    hub = SubscriptionHub()
    received = []

    async def callback(snapshot):
        await asyncio.sleep(0)
        received.append(snapshot)

    subscription = hub.subscribe("ride:1", callback, initial=0)
    for value in range(1, 6):
        hub.publish("ride:1", value)
    await subscription.flush()

    assert received == [0, 1, 2, 3, 4, 5]
    hub.close()


async def test_cancel_is_idempotent_and_final():
    hub = SubscriptionHub()
    received = []

    async def callback(snapshot):
        received.append(snapshot)

    subscription = hub.subscribe("ride:1", callback)
    hub.publish("ride:1", "a")
    await subscription.flush()

    assert subscription.cancel() is True
    assert subscription.cancel() is False
    assert hub.publish("ride:1", "b") == 0
    await asyncio.sleep(0)

    assert received == ["a"]
    assert hub.subscriber_count() == 0


async def test_failing_callback_does_not_stop_delivery():
    hub = SubscriptionHub()
    received = []

    async def callback(snapshot):
        if snapshot == "boom":
            raise RuntimeError("subscriber bug")
        received.append(snapshot)

    subscription = hub.subscribe("ride:1", callback)
    hub.publish("ride:1", "boom")
    hub.publish("ride:1", "ok")
    await subscription.flush()

    assert received == ["ok"]
    hub.close()


async def test_refresh_reruns_loader():
    hub = SubscriptionHub()
    state = {"count": 0}
    received = []

    async def callback(snapshot):
        received.append(snapshot)

    subscription = hub.subscribe("rides", callback, loader=lambda: state["count"])
    state["count"] = 2
    hub.refresh("rides")
    await subscription.flush()

    assert received == [0, 2]
    hub.close()


async def test_watch_ride_follows_lifecycle(services, category, passenger, driver):
    ride = await request_ride(services, passenger)
    snapshots = []

    async def on_snapshot(snapshot):
        snapshots.append(snapshot)

    subscription = services.store.watch_ride(ride.ride_id, on_snapshot)
    await services.state_machine.accept(ride.ride_id, driver.user_id)
    await services.dispatch.cancel(ride.ride_id, Actor(str(passenger.id), "passenger"))
    await subscription.flush()

    assert [s.ride["status"] if s.ride else None for s in snapshots] == [
        "pending",
        "accepted",
        "cancelled",
        None,
    ]
    assert snapshots[-1].location == "cancelled"
    subscription.cancel()


async def test_watch_ends_once_the_watcher_may_not_read_the_ride(
    services, category, passenger, driver
):
    rival = make_driver("Bruno Costa")
    ride = await request_ride(services, passenger)
    rival_snapshots = []
    passenger_snapshots = []

    async def on_rival_snapshot(snapshot):
        rival_snapshots.append(snapshot)

    async def on_passenger_snapshot(snapshot):
        passenger_snapshots.append(snapshot)

    rival_watch = services.store.watch_ride(
        ride.ride_id, on_rival_snapshot, actor=Actor(rival.user_id, "driver")
    )
    passenger_watch = services.store.watch_ride(
        ride.ride_id, on_passenger_snapshot, actor=Actor(str(passenger.id), "passenger")
    )

    await services.state_machine.accept(ride.ride_id, driver.user_id)
    await rival_watch.flush()
    await services.state_machine.start(ride.ride_id, driver.user_id)
    await passenger_watch.flush()

    assert [s.ride["status"] if s.ride else None for s in rival_snapshots] == ["pending", None]
    assert rival_snapshots[-1].revoked is True
    assert rival_snapshots[-1].record is None
    assert rival_watch.active is False

    assert [s.ride["status"] for s in passenger_snapshots] == [
        "pending",
        "accepted",
        "in_progress",
    ]
    assert not any(s.revoked for s in passenger_snapshots)
    passenger_watch.cancel()
