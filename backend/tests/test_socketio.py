def _names(received):
    return [pkt['name'] for pkt in received]


def test_socket_connect_and_subscribe(sio_client):
    # Ensure we are connected to /feed
    if not sio_client.is_connected('/feed'):
        sio_client.connect(namespace='/feed')
    assert sio_client.is_connected('/feed')
    assert 'connected' in _names(sio_client.get_received('/feed'))

    sio_client.emit('subscribe', {'table': 'participants', 'column': 'game_id', 'value': 'abc'}, namespace='/feed')
    received = sio_client.get_received('/feed')
    assert received[-1]['name'] == 'subscribed'
    assert received[-1]['args'][0] == {'room': 'participants:game_id=abc'}


def test_subscribe_rejects_unknown_topic(sio_client):
    sio_client.get_received('/feed')
    sio_client.emit('subscribe', {'table': 'participants', 'column': 'name', 'value': 'x'}, namespace='/feed')
    assert _names(sio_client.get_received('/feed')) == ['error']


def test_ping_pong(sio_client):
    sio_client.get_received('/feed')
    sio_client.emit('ping', {'n': 1}, namespace='/feed')
    received = sio_client.get_received('/feed')
    assert received[-1]['name'] == 'pong'
    assert received[-1]['args'][0] == {'n': 1}


def test_writes_are_pushed_to_subscribed_rooms(sio_client, client):
    game = client.post('/api/games', json={}).get_json()
    other = client.post('/api/games', json={}).get_json()
    sio_client.emit('subscribe', {'table': 'participants', 'column': 'game_id', 'value': game['id']}, namespace='/feed')
    sio_client.emit('subscribe', {'table': 'games', 'column': 'id', 'value': game['id']}, namespace='/feed')
    sio_client.get_received('/feed')  # flush

    alice = client.post(f"/api/games/{game['id']}/participants", json={'name': 'Alice'}).get_json()
    # A write in another game must not reach this room
    client.post(f"/api/games/{other['id']}/participants", json={'name': 'Zed'})
    client.patch(f"/api/games/{game['id']}", json={'phase': 'SELECTING'})
    client.delete(f"/api/participants/{alice['id']}")

    changes = [pkt['args'][0] for pkt in sio_client.get_received('/feed') if pkt['name'] == 'change']
    assert [(c['table'], c['event_type']) for c in changes] == [
        ('participants', 'INSERT'),
        ('games', 'UPDATE'),
        ('participants', 'DELETE'),
    ]
    insert, update, delete = changes
    assert insert['topic'] == f"participants:game_id={game['id']}"
    assert insert['before'] is None and insert['after']['name'] == 'Alice'
    assert update['before']['phase'] == 'LOBBY' and update['after']['phase'] == 'SELECTING'
    assert delete['after'] is None and delete['before']['id'] == alice['id']


def test_unsubscribe_stops_delivery(sio_client, client):
    game = client.post('/api/games', json={}).get_json()
    topic = {'table': 'participants', 'column': 'game_id', 'value': game['id']}
    sio_client.emit('subscribe', topic, namespace='/feed')
    sio_client.emit('unsubscribe', topic, namespace='/feed')
    assert 'unsubscribed' in _names(sio_client.get_received('/feed'))

    client.post(f"/api/games/{game['id']}/participants", json={'name': 'Alice'})
    assert 'change' not in _names(sio_client.get_received('/feed'))


def test_subscribe_is_acknowledged_after_joining_the_room(sio_client, client):
    game = client.post('/api/games', json={}).get_json()
    topic = {'table': 'participants', 'column': 'game_id', 'value': game['id']}

    ack = sio_client.emit('subscribe', topic, namespace='/feed', callback=True)
    assert ack == {'room': f"participants:game_id={game['id']}"}

    # The first write after the ack already reaches this socket
    sio_client.get_received('/feed')
    client.post(f"/api/games/{game['id']}/participants", json={'name': 'Alice'})
    assert 'change' in _names(sio_client.get_received('/feed'))


def test_refused_subscribe_is_acknowledged_with_error(sio_client):
    ack = sio_client.emit('subscribe', {'table': 'games', 'column': 'phase', 'value': 'LOBBY'},
                          namespace='/feed', callback=True)
    assert 'error' in ack
