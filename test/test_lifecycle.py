import asyncio

import pytest

from courier.delivery_state import VALID_TRANSITIONS, DeliveryStatus
from courier.errors import (
    ConflictError,
    ForbiddenError,
    IllegalTransitionError,
    InvalidArgumentError,
    NotFoundError,
)
from courier.lifecycle import DeliveryLifecycleManager
from courier.memory import _EventTable
from courier.models import NewDelivery

S = DeliveryStatus

RIDER_EDGES = [
    (source, target)
    for source, targets in VALID_TRANSITIONS.items()
    for target in targets
    if source is not S.CREATED
]


def run(coro):
    return asyncio.run(coro)


def new_delivery(**overrides) -> NewDelivery:
    fields = dict(
        business_id="biz1",
        pickup_name="Duka la Mama",
        pickup_phone="+255711000001",
        pickup_address="Kariakoo",
        dropoff_name="Halima",
        dropoff_phone="+255722000002",
        dropoff_address="Mikocheni",
    )
    fields.update(overrides)
    return NewDelivery(**fields)


# --- scenarios -------------------------------------------------------------


def test_assign_pick_up_forbidden_then_illegal(manager, backend, seed):
    seed("d1")

    d = run(manager.assign_rider("d1", "staff1", "rider7"))
    assert d.status is S.ASSIGNED
    assert d.assigned_rider_id == "rider7"
    assert len(backend.events_for("d1")) == 1

    d = run(manager.transition("d1", "rider7", "PICKED_UP"))
    assert d.status is S.PICKED_UP
    assert len(backend.events_for("d1")) == 2

    with pytest.raises(ForbiddenError):
        run(manager.transition("d1", "rider9", "IN_TRANSIT"))
    assert backend.deliveries["d1"].status is S.PICKED_UP
    assert len(backend.events_for("d1")) == 2

    with pytest.raises(IllegalTransitionError) as exc:
        run(manager.transition("d1", "rider7", "DELIVERED"))
    assert exc.value.allowed == {S.IN_TRANSIT, S.FAILED}
    assert exc.value.current_status is S.PICKED_UP
    assert exc.value.target_status is S.DELIVERED
    assert "IN_TRANSIT, FAILED" in str(exc.value)
    assert len(backend.events_for("d1")) == 2


def test_full_happy_path_records_history_in_order(manager, backend, seed):
    seed("d1")
    run(manager.assign_rider("d1", "staff1", "rider7"))
    for status in ("PICKED_UP", "IN_TRANSIT", "DELIVERED"):
        run(manager.transition("d1", "rider7", status))

    history = run(manager.history("d1", "staff1"))
    assert [e.status for e in history] == [S.ASSIGNED, S.PICKED_UP, S.IN_TRANSIT, S.DELIVERED]
    assert history[0].note == "Assigned to rider Juma"
    assert history[0].created_by == "staff1"
    assert history[-1].note == "Status updated to DELIVERED"
    assert history[-1].created_by == "rider7"


def test_unknown_delivery_is_not_found_and_writes_nothing(manager, backend):
    with pytest.raises(NotFoundError):
        run(manager.transition("missing", "rider7", "PICKED_UP"))
    assert backend.deliveries == {}
    assert backend.events == []


# --- transition properties -------------------------------------------------


@pytest.mark.parametrize("terminal", [S.DELIVERED, S.FAILED])
@pytest.mark.parametrize("target", ["PICKED_UP", "IN_TRANSIT", "DELIVERED", "FAILED"])
def test_terminal_delivery_rejects_every_target(manager, seed, snap, terminal, target):
    seed("d1", status=terminal, rider="rider7")
    before = snap()
    with pytest.raises(IllegalTransitionError) as exc:
        run(manager.transition("d1", "rider7", target))
    assert exc.value.allowed == frozenset()
    assert snap() == before


@pytest.mark.parametrize("source,target", RIDER_EDGES)
def test_legal_edge_succeeds_only_for_assigned_rider(manager, backend, seed, snap, source, target):
    seed("d1", status=source, rider="rider7")
    before = snap()
    with pytest.raises(ForbiddenError):
        run(manager.transition("d1", "rider9", target.value))
    assert snap() == before

    d = run(manager.transition("d1", "rider7", target.value))
    assert d.status is target
    assert backend.deliveries["d1"].status is target
    events = backend.events_for("d1")
    assert len(events) == 1
    assert events[0].status is target
    assert events[0].created_by == "rider7"


def test_forbidden_is_checked_before_legality(manager, seed):
    # Not the assigned rider: must not learn that DELIVERED is illegal from ASSIGNED
    seed("d1", status=S.ASSIGNED, rider="rider7")
    with pytest.raises(ForbiddenError):
        run(manager.transition("d1", "rider9", "DELIVERED"))


def test_unassigned_delivery_is_forbidden(manager, seed):
    seed("d1", status=S.CREATED)
    with pytest.raises(ForbiddenError):
        run(manager.transition("d1", "rider7", "PICKED_UP"))


def test_delivered_sets_completion_time_once(manager, backend, seed, clock):
    seed("d1", status=S.IN_TRANSIT, rider="rider7")
    d = run(manager.transition("d1", "rider7", "DELIVERED"))
    assert d.delivered_at == clock.now
    stamped = d.delivered_at

    with pytest.raises(IllegalTransitionError):
        run(manager.transition("d1", "rider7", "DELIVERED"))
    assert backend.deliveries["d1"].delivered_at == stamped


@pytest.mark.parametrize("source,target", [e for e in RIDER_EDGES if e[1] is not S.DELIVERED])
def test_other_statuses_leave_completion_time_unset(manager, seed, source, target):
    seed("d1", status=source, rider="rider7")
    d = run(manager.transition("d1", "rider7", target))
    assert d.delivered_at is None


def test_note_defaults_and_custom(manager, backend, seed):
    seed("d1", status=S.ASSIGNED, rider="rider7")
    run(manager.transition("d1", "rider7", "PICKED_UP", note="  "))
    run(manager.transition("d1", "rider7", "IN_TRANSIT", note="Boda boda via Morogoro Rd"))
    notes = [e.note for e in backend.events_for("d1")]
    assert notes == ["Status updated to PICKED_UP", "Boda boda via Morogoro Rd"]


@pytest.mark.parametrize("target", [None, "", "LOST", "picked_up"])
def test_unknown_target_is_invalid_argument(manager, seed, snap, target):
    seed("d1", status=S.ASSIGNED, rider="rider7")
    before = snap()
    with pytest.raises(InvalidArgumentError):
        run(manager.transition("d1", "rider7", target))
    assert snap() == before


@pytest.mark.parametrize("target", ["CREATED", "ASSIGNED"])
def test_assignment_statuses_are_not_rider_transitions(manager, seed, target):
    seed("d1", status=S.CREATED, rider="rider7")
    with pytest.raises(InvalidArgumentError):
        run(manager.transition("d1", "rider7", target))

@pytest.mark.parametrize("terminal", [S.DELIVERED, S.FAILED])
@pytest.mark.parametrize("target", ["CREATED", "ASSIGNED"])
def test_terminal_delivery_rejects_assignment_statuses_as_invalid(manager, seed, snap, terminal, target):
    # Only rider-reportable targets reach the legality check
    seed("d1", status=terminal, rider="rider7")
    before = snap()
    with pytest.raises(InvalidArgumentError):
        run(manager.transition("d1", "rider7", target))
    assert snap() == before



def test_event_count_matches_successful_operations(manager, backend, seed):
    seed("d1")
    ok = 0
    attempts = [
        lambda: manager.assign_rider("d1", "staff1", "rider7"),
        lambda: manager.transition("d1", "rider9", "PICKED_UP"),
        lambda: manager.transition("d1", "rider7", "PICKED_UP"),
        lambda: manager.transition("d1", "rider7", "PICKED_UP"),
        lambda: manager.assign_rider("d1", "rider7", "rider9"),
        lambda: manager.transition("d1", "rider7", "IN_TRANSIT"),
        lambda: manager.transition("d1", "rider7", "FAILED"),
        lambda: manager.assign_rider("d1", "staff1", "rider9"),
    ]
    for attempt in attempts:
        try:
            run(attempt())
            ok += 1
        except (ForbiddenError, IllegalTransitionError):
            pass
    assert ok == 4
    assert len(backend.events_for("d1")) == ok


# --- concurrency and atomicity ---------------------------------------------


def test_concurrent_transitions_from_same_status_only_one_wins(manager, backend, seed):
    seed("d1", status=S.ASSIGNED, rider="rider7")

    async def race():
        return await asyncio.gather(
            manager.transition("d1", "rider7", "PICKED_UP"),
            manager.transition("d1", "rider7", "FAILED"),
            return_exceptions=True,
        )

    results = run(race())
    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], (ConflictError, IllegalTransitionError))
    assert backend.deliveries["d1"].status is winners[0].status
    events = backend.events_for("d1")
    assert len(events) == 1
    assert events[0].status is winners[0].status


def test_failed_event_append_rolls_back_status(manager, backend, seed, snap, monkeypatch):
    seed("d1", status=S.IN_TRANSIT, rider="rider7")
    before = snap()

    async def broken_append(self, event):
        raise RuntimeError("event log unavailable")

    monkeypatch.setattr(_EventTable, "append", broken_append)
    with pytest.raises(RuntimeError):
        run(manager.transition("d1", "rider7", "DELIVERED"))
    assert snap() == before


# --- assign_rider ----------------------------------------------------------


@pytest.mark.parametrize("source", [S.CREATED, S.ASSIGNED, S.PICKED_UP, S.IN_TRANSIT])
def test_assign_forces_assigned_from_any_open_status(manager, backend, seed, source):
    seed("d1", status=source, rider="rider9" if source is not S.CREATED else None)
    d = run(manager.assign_rider("d1", "admin1", "rider7"))
    assert d.status is S.ASSIGNED
    assert d.assigned_rider_id == "rider7"
    events = backend.events_for("d1")
    assert len(events) == 1
    assert events[0].status is S.ASSIGNED
    assert events[0].note == "Assigned to rider Juma"


def test_reassignment_mid_flight_is_logged(manager, seed, caplog):
    seed("d1", status=S.IN_TRANSIT, rider="rider9")
    with caplog.at_level("WARNING", logger="courier.lifecycle"):
        run(manager.assign_rider("d1", "staff1", "rider7"))
    assert "resets status IN_TRANSIT -> ASSIGNED" in caplog.text


@pytest.mark.parametrize("terminal", [S.DELIVERED, S.FAILED])
def test_assign_rejects_terminal_delivery(manager, seed, snap, terminal):
    seed("d1", status=terminal, rider="rider9")
    before = snap()
    with pytest.raises(IllegalTransitionError) as exc:
        run(manager.assign_rider("d1", "staff1", "rider7"))
    assert exc.value.allowed == frozenset()
    assert snap() == before


@pytest.mark.parametrize(
    "actor,rider,error",
    [
        ("rider7", "rider9", ForbiddenError),
        ("biz-user", "rider7", ForbiddenError),
        ("staff-off", "rider7", ForbiddenError),
        ("nobody", "rider7", NotFoundError),
        ("staff1", "ghost", NotFoundError),
        ("staff1", "staff1", InvalidArgumentError),
        ("staff1", "rider-off", InvalidArgumentError),
        ("staff1", "", InvalidArgumentError),
        ("staff1", None, InvalidArgumentError),
    ],
)
def test_assign_rejections_write_nothing(manager, seed, snap, actor, rider, error):
    seed("d1")
    before = snap()
    with pytest.raises(error):
        run(manager.assign_rider("d1", actor, rider))
    assert snap() == before


def test_assign_unknown_delivery(manager):
    with pytest.raises(NotFoundError):
        run(manager.assign_rider("missing", "staff1", "rider7"))

@pytest.mark.parametrize("actor", ["rider7", "biz-user"])
def test_assign_hides_delivery_existence_from_unprivileged_actors(manager, seed, actor):
    seed("d1")
    for delivery_id in ("d1", "missing"):
        with pytest.raises(ForbiddenError):
            run(manager.assign_rider(delivery_id, actor, "rider9"))



# --- notifications ---------------------------------------------------------


def test_notifier_called_after_each_accepted_change(manager, notifier, seed):
    seed("d1")
    run(manager.assign_rider("d1", "staff1", "rider7"))
    run(manager.transition("d1", "rider7", "PICKED_UP"))
    with pytest.raises(ForbiddenError):
        run(manager.transition("d1", "rider9", "IN_TRANSIT"))
    assert notifier.calls == [("d1", S.ASSIGNED, "rider7"), ("d1", S.PICKED_UP, None)]


def test_notifier_failure_does_not_undo_transition(backend, seed, clock):
    class BrokenNotifier:
        async def notify(self, delivery, rider=None):
            raise ConnectionError("redis down")

    manager = DeliveryLifecycleManager(backend, notifier=BrokenNotifier(), clock=clock)
    seed("d1", status=S.ASSIGNED, rider="rider7")
    d = run(manager.transition("d1", "rider7", "PICKED_UP"))
    assert d.status is S.PICKED_UP
    assert backend.deliveries["d1"].status is S.PICKED_UP
    assert len(backend.events_for("d1")) == 1


# --- create / read ---------------------------------------------------------


def test_staff_creates_delivery_with_created_event(manager, backend):
    d = run(manager.create_delivery("staff1", new_delivery()))
    assert d.status is S.CREATED
    assert d.business_id == "biz1"
    assert d.created_by == "staff1"
    assert d.assigned_rider_id is None
    assert d.delivered_at is None
    events = backend.events_for(d.id)
    assert [(e.status, e.note) for e in events] == [(S.CREATED, "Delivery created by staff")]


def test_business_creates_for_its_own_business(manager):
    d = run(manager.create_delivery("biz-user", new_delivery(business_id=None)))
    assert d.business_id == "biz1"
    with pytest.raises(ForbiddenError):
        run(manager.create_delivery("biz-user", new_delivery(business_id="biz2")))


@pytest.mark.parametrize(
    "actor,details,error",
    [
        ("rider7", new_delivery(), ForbiddenError),
        ("nobody", new_delivery(), NotFoundError),
        ("staff1", new_delivery(business_id=None), InvalidArgumentError),
        ("staff1", new_delivery(dropoff_phone=" "), InvalidArgumentError),
    ],
)
def test_create_rejections_write_nothing(manager, backend, actor, details, error):
    with pytest.raises(error):
        run(manager.create_delivery(actor, details))
    assert backend.deliveries == {}
    assert backend.events == []


def test_visibility_of_single_delivery(manager, seed):
    seed("d1", status=S.ASSIGNED, rider="rider7", business_id="biz1")
    assert run(manager.get_delivery("d1", "staff1")).id == "d1"
    assert run(manager.get_delivery("d1", "rider7")).id == "d1"
    assert run(manager.get_delivery("d1", "biz-user")).id == "d1"
    with pytest.raises(ForbiddenError):
        run(manager.get_delivery("d1", "rider9"))
    with pytest.raises(ForbiddenError):
        run(manager.history("d1", "biz-other"))
    with pytest.raises(NotFoundError):
        run(manager.get_delivery("nope", "staff1"))


def test_list_is_scoped_by_role(manager, seed):
    from datetime import datetime, timezone

    seed("d1", status=S.ASSIGNED, rider="rider7", business_id="biz1",
         created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    seed("d2", status=S.CREATED, business_id="biz2",
         created_at=datetime(2026, 1, 2, tzinfo=timezone.utc))
    seed("d3", status=S.DELIVERED, rider="rider9", business_id="biz1",
         created_at=datetime(2026, 1, 3, tzinfo=timezone.utc))

    assert [d.id for d in run(manager.list_deliveries("staff1"))] == ["d3", "d2", "d1"]
    assert [d.id for d in run(manager.list_deliveries("staff1", status="CREATED"))] == ["d2"]
    assert [d.id for d in run(manager.list_deliveries("staff1", status="ALL", business_id="biz1"))] == ["d3", "d1"]
    assert [d.id for d in run(manager.list_deliveries("rider7"))] == ["d1"]
    assert [d.id for d in run(manager.list_deliveries("biz-user"))] == ["d3", "d1"]
    assert [d.id for d in run(manager.list_deliveries("staff1", limit=1, offset=1))] == ["d2"]

    with pytest.raises(ForbiddenError):
        run(manager.list_deliveries("biz-user", business_id="biz2"))
    with pytest.raises(InvalidArgumentError):
        run(manager.list_deliveries("staff1", status="LOST"))
    with pytest.raises(InvalidArgumentError):
        run(manager.list_deliveries("staff1", limit=0))
