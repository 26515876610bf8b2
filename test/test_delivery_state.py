from courier.delivery_state import (
    RIDER_STATUSES,
    TERMINAL_STATUSES,
    VALID_TRANSITIONS,
    DeliveryStatus,
    allowed_transitions,
    is_terminal,
    is_valid_transition,
    parse_status,
    sort_statuses,
)

S = DeliveryStatus


def test_transition_table():
    assert allowed_transitions(S.CREATED) == {S.ASSIGNED}
    assert allowed_transitions(S.ASSIGNED) == {S.PICKED_UP, S.FAILED}
    assert allowed_transitions(S.PICKED_UP) == {S.IN_TRANSIT, S.FAILED}
    assert allowed_transitions(S.IN_TRANSIT) == {S.DELIVERED, S.FAILED}
    assert allowed_transitions(S.DELIVERED) == frozenset()
    assert allowed_transitions(S.FAILED) == frozenset()


def test_every_status_has_an_entry():
    assert set(VALID_TRANSITIONS) == set(S)


def test_terminal_statuses_have_no_outgoing_edges():
    for status in TERMINAL_STATUSES:
        assert is_terminal(status)
        for target in S:
            assert not is_valid_transition(status, target)


def test_no_edge_revisits_an_earlier_status():
    order = list(S)
    for source, targets in VALID_TRANSITIONS.items():
        for target in targets:
            assert order.index(target) > order.index(source)


def test_skipping_a_step_is_illegal():
    assert not is_valid_transition(S.PICKED_UP, S.DELIVERED)
    assert not is_valid_transition(S.ASSIGNED, S.IN_TRANSIT)
    assert not is_valid_transition(S.CREATED, S.PICKED_UP)


def test_rider_statuses_exclude_assignment():
    assert S.ASSIGNED not in RIDER_STATUSES
    assert S.CREATED not in RIDER_STATUSES
    assert RIDER_STATUSES == {S.PICKED_UP, S.IN_TRANSIT, S.DELIVERED, S.FAILED}


def test_parse_status():
    assert parse_status("IN_TRANSIT") is S.IN_TRANSIT
    assert parse_status(S.FAILED) is S.FAILED
    assert parse_status("in_transit") is None
    assert parse_status("LOST") is None


def test_sort_statuses_uses_lifecycle_order():
    assert sort_statuses({S.FAILED, S.IN_TRANSIT}) == [S.IN_TRANSIT, S.FAILED]


def test_actor_capabilities_follow_role():
    from courier.models import Actor
    from courier.roles import Role

    staff = Actor("s", Role.STAFF)
    rider = Actor("r", Role.RIDER)
    assert "assign_rider" in staff.capabilities
    assert staff.can("assign_rider")
    assert rider.capabilities == {"view_assigned_deliveries", "update_delivery_status"}
    assert not rider.can("assign_rider")
    assert not Actor("b", Role.BUSINESS).can("view_all_deliveries")
