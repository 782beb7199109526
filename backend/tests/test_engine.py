import random

import pytest

from poisoner.schemas import Phase, parse_change
from poisoner.services.session.engine import EngineState, NoticeKind, ReconciliationEngine
from poisoner.services.session.errors import AttachCancelled, NotFound, SelfNotFound, SessionEnded
from poisoner.services.session.local_store import MemorySessionStore


def _seat(store, names, host='Alice'):
    game = store.create_game()
    rows = {name: store.insert_participant(game.id, name, is_host=(name == host)) for name in names}
    return game, rows


class InterleavingStore:
    """Wraps a record store and runs a hook right after the roster is read."""

    def __init__(self, inner, after_roster_read):
        self.inner = inner
        self.after_roster_read = after_roster_read

    def __getattr__(self, name):
        return getattr(self.inner, name)

    def list_participants(self, game_id):
        roster = self.inner.list_participants(game_id)
        hook, self.after_roster_read = self.after_roster_read, None
        if hook is not None:
            hook()
        return roster


def _deliver_reversed(engine, feed):
    # Hand the queued payloads to the engine newest first
    for payload in reversed(feed.pending):
        event = parse_change(payload)
        if event.table == 'games':
            engine.on_game_event(event)
        else:
            engine.on_participant_event(event)


def test_attach_builds_projection(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    engine = ReconciliationEngine(store, hub.feed())
    me = engine.attach(game.id, 'Alice')

    assert me.id == rows['Alice'].id
    assert engine.state is EngineState.ATTACHED
    assert [p.name for p in engine.participants] == ['Alice', 'Bob']
    assert engine.is_host
    assert engine.readiness == (0, 2)
    assert engine.role() is None


def test_live_events_update_projection(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    engine = ReconciliationEngine(store, hub.feed())
    engine.attach(game.id, 'Bob')

    store.insert_participant(game.id, 'Carol')
    store.update_participant(rows['Alice'].id, acknowledged=True)
    store.update_game(game.id, phase=Phase.SELECTING)

    assert [p.name for p in engine.participants] == ['Alice', 'Bob', 'Carol']
    assert engine.readiness == (1, 3)
    assert engine.game.phase is Phase.SELECTING


def test_duplicate_insert_is_idempotent(store, hub):
    game, _ = _seat(store, ['Alice'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    engine.attach(game.id, 'Alice')

    store.insert_participant(game.id, 'Bob')
    feed.flush(duplicate=True)

    assert [p.name for p in engine.participants] == ['Alice', 'Bob']


def test_clients_converge_under_reordering_and_duplication(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob', 'Carol'])
    feeds = [hub.feed(auto_deliver=False) for _ in range(8)]
    engines = [ReconciliationEngine(store, feed) for feed in feeds]
    for engine in engines:
        engine.attach(game.id, 'Alice')

    dave = store.insert_participant(game.id, 'Dave')
    store.update_participant(rows['Bob'].id, acknowledged=True)
    store.update_participant(dave.id, acknowledged=True)
    store.reset_and_assign_roles(game.id, rows['Carol'].id)
    store.update_game(game.id, phase=Phase.SELECTING)
    store.update_participant(rows['Bob'].id, acknowledged=True)
    eve = store.insert_participant(game.id, 'Eve')
    store.update_participant(eve.id, acknowledged=True)
    store.delete_participant(eve.id)
    store.update_game(game.id, phase=Phase.ACTIVE)

    expected = store.list_participants(game.id)
    expected_game = store.read_game(game.id)
    for seed, (feed, engine) in enumerate(zip(feeds, engines)):
        feed.flush(rng=random.Random(seed), duplicate=bool(seed % 2))
        assert list(engine.participants) == expected
        assert engine.game.phase is expected_game.phase
        assert engine.game.revision == expected_game.revision
        assert engine.state is EngineState.ATTACHED


def test_stale_snapshots_are_ignored(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    engine.attach(game.id, 'Alice')

    store.update_participant(rows['Bob'].id, acknowledged=True)
    store.update_participant(rows['Bob'].id, acknowledged=False)
    store.update_game(game.id, phase=Phase.SELECTING)
    store.update_game(game.id, phase=Phase.ACTIVE)
    _deliver_reversed(engine, feed)

    bob = next(p for p in engine.participants if p.name == 'Bob')
    assert bob.acknowledged is False
    assert bob.revision == 2
    assert engine.game.phase is Phase.ACTIVE


def test_deleted_rows_are_not_resurrected(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    engine.attach(game.id, 'Alice')

    carol = store.insert_participant(game.id, 'Carol')
    store.update_participant(carol.id, acknowledged=True)
    store.delete_participant(carol.id)
    store.update_participant(rows['Bob'].id, acknowledged=True)
    store.delete_participant(rows['Bob'].id)
    _deliver_reversed(engine, feed)

    assert [p.name for p in engine.participants] == ['Alice']


def test_events_during_attach_are_replayed(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])

    def concurrent_writes():
        store.insert_participant(game.id, 'Carol')
        store.update_participant(rows['Bob'].id, acknowledged=True)

    engine = ReconciliationEngine(InterleavingStore(store, concurrent_writes), hub.feed())
    engine.attach(game.id, 'Alice')

    assert [p.name for p in engine.participants] == ['Alice', 'Bob', 'Carol']
    assert engine.readiness == (1, 3)


def test_detach_during_attach_cancels(store, hub):
    game, _ = _seat(store, ['Alice'])
    feed = hub.feed()
    engine = ReconciliationEngine(InterleavingStore(store, lambda: engine.detach()), feed)

    with pytest.raises(AttachCancelled):
        engine.attach(game.id, 'Alice')
    assert engine.state is EngineState.DETACHED
    assert feed.subscriptions == []
    assert engine.participants == ()


def test_callbacks_after_detach_are_dropped(store, hub):
    game, _ = _seat(store, ['Alice'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    engine.attach(game.id, 'Alice')
    stale_subscription = feed.subscriptions[1]

    store.insert_participant(game.id, 'Bob')
    payload = feed.pending[0]
    engine.detach()
    engine.detach()

    # A callback captured before detaching still fires, but changes nothing
    stale_subscription.callback(parse_change(payload))
    assert engine.state is EngineState.DETACHED
    assert engine.participants == ()
    assert feed.pending == []


def test_attach_without_own_row_releases_subscriptions(store, hub):
    game, _ = _seat(store, ['Alice'])
    feed = hub.feed()
    engine = ReconciliationEngine(store, feed)

    with pytest.raises(SelfNotFound):
        engine.attach(game.id, 'Mallory')
    assert engine.state is EngineState.DETACHED
    assert feed.subscriptions == []


def test_attach_to_missing_or_completed_game(store, hub):
    feed = hub.feed()
    engine = ReconciliationEngine(store, feed)
    with pytest.raises(NotFound):
        engine.attach('missing', 'Alice')

    game, _ = _seat(store, ['Alice'])
    store.update_game(game.id, phase=Phase.COMPLETED)
    with pytest.raises(SessionEnded):
        engine.attach(game.id, 'Alice')
    assert feed.subscriptions == []


def test_eviction_invalidates_and_purges_session(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    sessions = MemorySessionStore()
    sessions.save(game.id, 'Bob')
    engine = ReconciliationEngine(store, hub.feed(), sessions)
    notices = []
    engine.add_listener(notices.append)
    engine.attach(game.id, 'Bob')

    store.delete_participant(rows['Bob'].id)

    assert engine.state is EngineState.INVALIDATED
    assert [(n.kind, n.reason) for n in notices] == [(NoticeKind.INVALIDATED, 'evicted')]
    assert sessions.get_all() == []


def test_someone_else_leaving_does_not_invalidate(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    engine = ReconciliationEngine(store, hub.feed())
    engine.attach(game.id, 'Alice')

    store.delete_participant(rows['Bob'].id)

    assert engine.state is EngineState.ATTACHED
    assert [p.name for p in engine.participants] == ['Alice']


def test_completion_invalidates(store, hub):
    game, _ = _seat(store, ['Alice'])
    engine = ReconciliationEngine(store, hub.feed())
    notices = []
    engine.add_listener(notices.append)
    engine.attach(game.id, 'Alice')

    store.update_game(game.id, phase=Phase.COMPLETED)

    assert engine.state is EngineState.INVALIDATED
    assert notices[-1].reason == 'completed'


def test_reconnect_resyncs_missed_changes(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob', 'Carol'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    engine.attach(game.id, 'Alice')

    store.delete_participant(rows['Carol'].id)
    store.insert_participant(game.id, 'Dave')
    store.update_participant(rows['Bob'].id, acknowledged=True)
    store.update_game(game.id, phase=Phase.SELECTING)
    feed.reconnect()

    assert list(engine.participants) == store.list_participants(game.id)
    assert engine.game.phase is Phase.SELECTING
    assert engine.state is EngineState.ATTACHED


def test_reconnect_notices_own_removal(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    feed = hub.feed(auto_deliver=False)
    engine = ReconciliationEngine(store, feed)
    notices = []
    engine.add_listener(notices.append)
    engine.attach(game.id, 'Bob')

    store.delete_participant(rows['Bob'].id)
    feed.reconnect()

    assert engine.state is EngineState.INVALIDATED
    assert notices[-1].reason == 'evicted'


def test_role_only_visible_once_roles_are_in_play(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob'])
    engine = ReconciliationEngine(store, hub.feed())
    engine.attach(game.id, 'Bob')

    store.reset_and_assign_roles(game.id, rows['Bob'].id)
    assert engine.role() is None

    store.update_game(game.id, phase=Phase.SELECTING)
    assert engine.role() is True


def test_participant_ids_are_not_reused_after_delete(store, hub):
    game, rows = _seat(store, ['Alice', 'Bob', 'Carol', 'Dave'])
    engine = ReconciliationEngine(store, hub.feed())
    engine.attach(game.id, 'Alice')

    store.delete_participant(rows['Dave'].id)
    eve = store.insert_participant(game.id, 'Eve')

    assert eve.id != rows['Dave'].id
    assert list(engine.participants) == store.list_participants(game.id)
    assert [p.name for p in engine.participants] == ['Alice', 'Bob', 'Carol', 'Eve']
