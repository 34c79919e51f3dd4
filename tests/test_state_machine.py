import pytest

from ridehail.errors import (
    DriverNotEligible,
    InvalidRequest,
    InvalidTransition,
    PermissionDenied,
    PreconditionFailed,
    ProfileIncompleteError,
    RideNotFound,
    TransientStoreError,
)
from ridehail.models.driver_model import Driver, Vehicle
from ridehail.models.notification_model import Notification
from ridehail.models.ride_model import (
    ActiveRide,
    CancelledRide,
    CompletedRide,
    assert_ride_invariants,
)
from ridehail.models.user_model import User
from ridehail.services import SYSTEM_ACTOR, Actor

from conftest import NOON, make_driver, make_user, request_ride


@pytest.fixture
async def ride(services, category, passenger, driver):
    return await request_ride(services, passenger)


async def drive_to_completion(services, ride, driver):
    sm = services.state_machine
    await sm.accept(ride.ride_id, driver.user_id)
    await sm.mark_arrived(ride.ride_id, driver.user_id)
    await sm.start(ride.ride_id, driver.user_id)
    return await sm.complete(ride.ride_id, driver.user_id, final_location=(-23.56, -46.65))


async def test_full_lifecycle(services, ride, driver, passenger):
    sm = services.state_machine

    accepted = await sm.accept(ride.ride_id, driver.user_id)
    assert accepted.status == "accepted"
    assert accepted.driver_id == driver.user_id
    assert accepted.driver.vehicle.plate == "ABC1D23"
    assert accepted.accepted_at is not None
    assert_ride_invariants(accepted)

    arrived = await sm.mark_arrived(ride.ride_id, driver.user_id)
    assert arrived.driver_arrived is True
    assert arrived.status == "accepted"

    started = await sm.start(ride.ride_id, driver.user_id)
    assert started.status == "in_progress"

    completed = await sm.complete(ride.ride_id, driver.user_id, final_location=(-23.56, -46.65))
    assert isinstance(completed, CompletedRide)
    assert completed.status == "completed"
    assert list(completed.final_location) == [-23.56, -46.65]
    assert_ride_invariants(completed)

    assert ActiveRide.objects(pk=ride.ride_id).first() is None
    assert CompletedRide.objects(pk=ride.ride_id).count() == 1
    assert Driver.objects(pk=driver.user_id).first().total_trips == 1

    found, where = await sm.get_ride(ride.ride_id, Actor(str(passenger.id), "passenger"))
    assert where == "completed"
    assert found.ride_id == ride.ride_id


async def test_lifecycle_and_presence_use_the_injected_clock(services, ride, driver):
    sm = services.state_machine

    accepted = await sm.accept(ride.ride_id, driver.user_id)
    assert accepted.accepted_at == NOON
    arrived = await sm.mark_arrived(ride.ride_id, driver.user_id)
    assert arrived.arrived_at == NOON
    started = await sm.start(ride.ride_id, driver.user_id)
    assert started.started_at == NOON

    online = await services.presence.go_online(driver.user_id, (-23.55, -46.63))
    assert online.last_update == NOON


def stored_fields(model, ride_id, skip):
    document = model.objects(pk=ride_id).first().to_mongo().to_dict()
    return {name: value for name, value in document.items() if name not in skip}


async def test_completion_moves_every_field_to_history(services, ride, driver):
    sm = services.state_machine
    await sm.accept(ride.ride_id, driver.user_id)
    await sm.mark_arrived(ride.ride_id, driver.user_id)
    await sm.start(ride.ride_id, driver.user_id)
    written = {"status", "completed_at", "completed_by", "final_location", "updated_at"}
    before = stored_fields(ActiveRide, ride.ride_id, written)

    await sm.complete(ride.ride_id, driver.user_id, final_location=(-23.56, -46.65))

    after = stored_fields(CompletedRide, ride.ride_id, written)
    assert after["_id"] == before["_id"]
    assert after == before


async def test_cancellation_moves_every_field_to_history(services, ride, driver, passenger):
    await services.state_machine.accept(ride.ride_id, driver.user_id)
    written = {
        "status",
        "driver_id",
        "cancelled_at",
        "cancelled_by",
        "cancellation_reason",
        "updated_at",
    }
    before = stored_fields(ActiveRide, ride.ride_id, written)

    await services.state_machine.cancel(
        ride.ride_id, Actor(str(passenger.id), "passenger"), reason="changed my mind"
    )

    after = stored_fields(CancelledRide, ride.ride_id, written)
    assert after == before
    assert after["driver"]["driver_id"] == driver.user_id


async def test_accept_requires_approved_driver(services, ride):
    pending = make_driver("Pedro Alves", status="pending")
    with pytest.raises(DriverNotEligible):
        await services.state_machine.accept(ride.ride_id, pending.user_id)

    with pytest.raises(DriverNotEligible):
        await services.state_machine.accept(ride.ride_id, "000000000000000000000000")


async def test_accept_requires_vehicle_details(services, ride):
    incomplete = make_driver("Rita Gomes", vehicle=Vehicle(model="Onix", plate="", color=None))
    with pytest.raises(ProfileIncompleteError) as exc_info:
        await services.state_machine.accept(ride.ride_id, incomplete.user_id)

    assert exc_info.value.missing_fields == ["plate", "color"]
    assert ActiveRide.objects(pk=ride.ride_id).first().status == "pending"


async def test_second_driver_loses(services, ride, driver):
    rival = make_driver("Bruno Costa")
    await services.state_machine.accept(ride.ride_id, driver.user_id)

    with pytest.raises(PreconditionFailed) as exc_info:
        await services.state_machine.accept(ride.ride_id, rival.user_id)

    assert exc_info.value.code == "no_longer_available"
    assert ActiveRide.objects(pk=ride.ride_id).first().driver_id == driver.user_id


async def test_accept_lost_between_read_and_write(services, ride, driver):
    """A stale read cannot overwrite a concurrent winner"""
    rival = make_driver("Bruno Costa")
    store = services.store
    real_locate = store.locate
    stale = ActiveRide.objects(pk=ride.ride_id).first()
    calls = []

    async def locate_then_race(ride_id):
        calls.append(ride_id)
        if len(calls) == 1:
            ActiveRide.objects(pk=ride_id).update_one(
                set__status="accepted", set__driver_id=rival.user_id
            )
            return stale, "active"
        return await real_locate(ride_id)

    store.locate = locate_then_race

    with pytest.raises(PreconditionFailed):
        await services.state_machine.accept(ride.ride_id, driver.user_id)
    assert ActiveRide.objects(pk=ride.ride_id).first().driver_id == rival.user_id


async def test_repeated_accept_is_idempotent(services, ride, driver):
    first = await services.state_machine.accept(ride.ride_id, driver.user_id)
    again = await services.state_machine.accept(ride.ride_id, driver.user_id)
    assert again.accepted_at == first.accepted_at
    await services.notifier.drain()
    assert Notification.objects(type="ride_accepted").count() == 1


async def test_mark_arrived_twice_keeps_first_timestamp(services, ride, driver):
    await services.state_machine.accept(ride.ride_id, driver.user_id)
    first = await services.state_machine.mark_arrived(ride.ride_id, driver.user_id)
    second = await services.state_machine.mark_arrived(ride.ride_id, driver.user_id)
    assert second.arrived_at == first.arrived_at


async def test_only_assigned_driver_may_progress(services, ride, driver):
    other = make_driver("Bruno Costa")
    await services.state_machine.accept(ride.ride_id, driver.user_id)

    with pytest.raises(PermissionDenied):
        await services.state_machine.start(ride.ride_id, other.user_id)
    assert ActiveRide.objects(pk=ride.ride_id).first().status == "accepted"


async def test_out_of_order_transitions(services, ride, driver):
    sm = services.state_machine
    with pytest.raises(InvalidTransition):
        await sm.start(ride.ride_id, driver.user_id)
    with pytest.raises(InvalidTransition):
        await sm.complete(ride.ride_id, driver.user_id)
    with pytest.raises(InvalidTransition):
        await sm.mark_arrived(ride.ride_id, driver.user_id)


async def test_unknown_ride(services, driver):
    with pytest.raises(RideNotFound):
        await services.state_machine.start("000000000000000000000000", driver.user_id)
    with pytest.raises(RideNotFound):
        await services.state_machine.start("not-an-id", driver.user_id)


async def test_passenger_cancels_pending(services, ride, passenger):
    cancelled = await services.state_machine.cancel(
        ride.ride_id, Actor(str(passenger.id), "passenger"), reason="changed my mind"
    )
    assert isinstance(cancelled, CancelledRide)
    assert cancelled.cancelled_by == "passenger"
    assert cancelled.cancellation_reason == "changed my mind"
    assert ActiveRide.objects(pk=ride.ride_id).first() is None
    assert_ride_invariants(cancelled)


async def test_driver_cancel_keeps_snapshot(services, ride, driver, passenger):
    await services.state_machine.accept(ride.ride_id, driver.user_id)
    cancelled = await services.state_machine.cancel(
        ride.ride_id, Actor(driver.user_id, "driver"), reason="flat tyre"
    )

    assert cancelled.cancelled_by == "driver"
    assert cancelled.driver_id is None
    assert cancelled.driver.driver_id == driver.user_id
    assert_ride_invariants(cancelled)

    await services.notifier.drain()
    notice = Notification.objects(user_id=str(passenger.id), type="ride_cancelled").first()
    assert notice is not None


async def test_stranger_cannot_cancel(services, ride):
    stranger = make_user("Outra Pessoa")
    with pytest.raises(PermissionDenied):
        await services.state_machine.cancel(ride.ride_id, Actor(str(stranger.id), "passenger"))


async def test_cannot_cancel_in_progress(services, ride, driver, passenger):
    sm = services.state_machine
    await sm.accept(ride.ride_id, driver.user_id)
    await sm.start(ride.ride_id, driver.user_id)

    with pytest.raises(InvalidTransition):
        await sm.cancel(ride.ride_id, Actor(str(passenger.id), "passenger"))


async def test_cancel_twice(services, ride, passenger):
    actor = Actor(str(passenger.id), "passenger")
    await services.state_machine.cancel(ride.ride_id, actor)
    with pytest.raises(InvalidTransition):
        await services.state_machine.cancel(ride.ride_id, actor)


async def test_complete_again_returns_history(services, ride, driver):
    completed = await drive_to_completion(services, ride, driver)
    again = await services.state_machine.complete(ride.ride_id, driver.user_id)
    assert again.completed_at == completed.completed_at
    assert Driver.objects(pk=driver.user_id).first().total_trips == 1


async def test_ratings_update_both_averages(services, ride, driver, passenger):
    await drive_to_completion(services, ride, driver)
    sm = services.state_machine

    rated = await sm.rate_by_passenger(ride.ride_id, str(passenger.id), 4, "  Great driver ")
    assert rated.passenger_rating.rating == 4
    assert rated.passenger_rating.comment == "Great driver"

    rated = await sm.rate_by_driver(ride.ride_id, driver.user_id, 3)
    assert rated.driver_rating.rating == 3
    assert rated.passenger_rating.rating == 4

    driver_doc = Driver.objects(pk=driver.user_id).first()
    assert driver_doc.total_ratings == 1
    assert driver_doc.rating == pytest.approx(4.0)

    user_doc = User.objects(pk=passenger.id).first()
    assert user_doc.total_ratings == 1
    assert user_doc.rating == pytest.approx(3.0)


async def test_rating_once_per_party(services, ride, driver, passenger):
    await drive_to_completion(services, ride, driver)
    await services.state_machine.rate_by_passenger(ride.ride_id, str(passenger.id), 5)

    with pytest.raises(InvalidTransition):
        await services.state_machine.rate_by_passenger(ride.ride_id, str(passenger.id), 1)
    assert Driver.objects(pk=driver.user_id).first().total_ratings == 1


async def test_rating_stored_before_a_lost_reply_is_not_a_conflict(
    services, ride, driver, passenger
):
    await drive_to_completion(services, ride, driver)
    store = services.store
    real_update = store.conditional_update
    writes = []

    async def update_then_drop_reply(ride_id, *args, **kwargs):
        writes.append(ride_id)
        updated = await real_update(ride_id, *args, **kwargs)
        if len(writes) == 1:
            raise TransientStoreError("Failed to update ride")
        return updated

    store.conditional_update = update_then_drop_reply

    rated = await services.state_machine.rate_by_passenger(ride.ride_id, str(passenger.id), 1)

    assert rated.passenger_rating.rating == 1
    # the retry found its own rating and did not write again
    assert writes == [ride.ride_id]
    driver_doc = Driver.objects(pk=driver.user_id).first()
    assert driver_doc.total_ratings == 1
    assert driver_doc.rating == pytest.approx(1.0)

    with pytest.raises(InvalidTransition):
        await services.state_machine.rate_by_passenger(ride.ride_id, str(passenger.id), 1)


async def test_rating_validation(services, ride, driver, passenger):
    await drive_to_completion(services, ride, driver)
    sm = services.state_machine

    for bad in (0, 6, 4.5, True):
        with pytest.raises(InvalidRequest):
            await sm.rate_by_passenger(ride.ride_id, str(passenger.id), bad)
    with pytest.raises(InvalidRequest):
        await sm.rate_by_passenger(ride.ride_id, str(passenger.id), 5, "x" * 501)


async def test_cannot_rate_before_completion(services, ride, driver, passenger):
    await services.state_machine.accept(ride.ride_id, driver.user_id)
    with pytest.raises(InvalidTransition):
        await services.state_machine.rate_by_passenger(ride.ride_id, str(passenger.id), 5)


async def test_party_cannot_write_the_other_rating(services, ride, driver):
    await drive_to_completion(services, ride, driver)
    stranger = make_user("Outra Pessoa")
    with pytest.raises(PermissionDenied):
        await services.state_machine.rate_by_passenger(ride.ride_id, str(stranger.id), 5)


async def test_rating_finishes_interrupted_relocation(services, ride, driver, passenger):
    sm = services.state_machine
    await sm.accept(ride.ride_id, driver.user_id)
    await sm.start(ride.ride_id, driver.user_id)
    # completion landed but the move to history did not
    ActiveRide.objects(pk=ride.ride_id).update_one(set__status="completed")

    rated = await sm.rate_by_passenger(ride.ride_id, str(passenger.id), 5)
    assert isinstance(rated, CompletedRide)
    assert ActiveRide.objects(pk=ride.ride_id).first() is None


async def test_reconcile_in_progress(services, ride, driver, passenger):
    sm = services.state_machine
    await sm.accept(ride.ride_id, driver.user_id)
    await sm.start(ride.ride_id, driver.user_id)
    admin = Actor("admin-1", "admin")

    with pytest.raises(PermissionDenied):
        await sm.reconcile(ride.ride_id, Actor(str(passenger.id), "passenger"), "completed")
    with pytest.raises(InvalidRequest):
        await sm.reconcile(ride.ride_id, admin, "lost")

    closed = await sm.reconcile(ride.ride_id, admin, "cancelled", note="app crashed")
    assert isinstance(closed, CancelledRide)
    assert closed.cancelled_by == "admin"
    assert closed.reconciled_by == "admin-1"
    assert closed.driver_id is None
    assert_ride_invariants(closed)


async def test_read_authorization(services, ride, driver):
    sm = services.state_machine
    stranger = make_user("Outra Pessoa")
    other_driver = make_driver("Bruno Costa")

    # any driver may look at a pending ride
    await sm.get_ride(ride.ride_id, Actor(other_driver.user_id, "driver"))
    with pytest.raises(PermissionDenied):
        await sm.get_ride(ride.ride_id, Actor(str(stranger.id), "passenger"))

    await sm.accept(ride.ride_id, driver.user_id)
    with pytest.raises(PermissionDenied):
        await sm.get_ride(ride.ride_id, Actor(other_driver.user_id, "driver"))
    _, where = await sm.get_ride(ride.ride_id, SYSTEM_ACTOR)
    assert where == "active"
