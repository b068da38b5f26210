"""Room registry: capacity, lifetime and lookups."""
import pytest

from rooms import JoinResult, RoomFull, RoomRegistry


@pytest.fixture
def registry():
    return RoomRegistry()


def test_first_join_is_alone(registry):
    assert registry.join('r1', 'a') == JoinResult(alone=True)
    assert registry.members('r1') == {'a'}


def test_second_join_pairs_with_existing_member(registry):
    registry.join('r1', 'a')
    result = registry.join('r1', 'b')
    assert result == JoinResult(alone=False, peer='a')
    assert registry.members('r1') == {'a', 'b'}


def test_third_join_is_rejected_and_not_added(registry):
    registry.join('r1', 'a')
    registry.join('r1', 'b')
    with pytest.raises(RoomFull) as exc:
        registry.join('r1', 'c')
    assert exc.value.room_id == 'r1'
    assert registry.members('r1') == {'a', 'b'}
    assert registry.room_of('c') is None


def test_empty_room_id_rejected(registry):
    with pytest.raises(ValueError):
        registry.join('', 'a')
    assert len(registry) == 0


def test_participant_in_one_room_at_a_time(registry):
    registry.join('r1', 'a')
    with pytest.raises(ValueError):
        registry.join('r2', 'a')
    assert 'r2' not in registry


def test_leave_returns_remaining_peer(registry):
    registry.join('r1', 'a')
    registry.join('r1', 'b')
    assert registry.leave('a') == ('r1', 'b')
    assert registry.members('r1') == {'b'}
    assert registry.peer_of('b') is None


def test_room_deleted_when_last_member_leaves(registry):
    registry.join('r1', 'a')
    assert registry.leave('a') == ('r1', None)
    assert 'r1' not in registry
    assert len(registry) == 0


def test_leave_unknown_participant_is_noop(registry):
    registry.join('r1', 'a')
    assert registry.leave('ghost') is None
    assert registry.leave('ghost') is None
    assert registry.members('r1') == {'a'}


def test_leave_is_idempotent(registry):
    registry.join('r1', 'a')
    registry.join('r1', 'b')
    registry.leave('a')
    assert registry.leave('a') is None
    assert registry.members('r1') == {'b'}


def test_room_reopens_after_departure(registry):
    registry.join('r1', 'a')
    registry.join('r1', 'b')
    registry.leave('a')
    assert registry.join('r1', 'd') == JoinResult(alone=False, peer='b')


def test_is_full(registry):
    assert not registry.is_full('r1')
    registry.join('r1', 'a')
    assert not registry.is_full('r1')
    registry.join('r1', 'b')
    assert registry.is_full('r1')
    registry.leave('b')
    assert not registry.is_full('r1')


def test_peer_of(registry):
    registry.join('r1', 'a')
    assert registry.peer_of('a') is None
    registry.join('r1', 'b')
    assert registry.peer_of('a') == 'b'
    assert registry.peer_of('b') == 'a'
    assert registry.peer_of('nobody') is None


def test_rooms_are_independent(registry):
    registry.join('r1', 'a')
    registry.join('r2', 'b')
    assert registry.peer_of('a') is None
    assert registry.join('r1', 'c').peer == 'a'
    assert registry.join('r2', 'd').peer == 'b'


def test_room_size_stays_within_capacity(registry):
    for i in range(10):
        try:
            registry.join('busy', f'p{i}')
        except RoomFull:
            pass
        assert len(registry.members('busy')) in (1, 2)
        if i % 3 == 2:
            registry.leave(next(iter(registry.members('busy'))))
