from flask_socketio import join_room, leave_room, emit
from flask import current_app, request
from poisoner import socketio
from poisoner.services.session.feed import Topic, change_payload

FEED_NAMESPACE = '/feed'


def handle_connect():
    emit('connected', {'message': f'Connected to {FEED_NAMESPACE}'})


def handle_disconnect(*args):
    current_app.logger.debug(f"[feed] disconnect sid={request.sid}")


def handle_subscribe(data):
    try:
        topic = Topic.from_dict(data)
    except ValueError as exc:
        emit('error', {'message': str(exc)})
        return {'error': str(exc)}
    join_room(topic.room)
    current_app.logger.debug(f"[feed] subscribe sid={request.sid} room={topic.room}")
    emit('subscribed', {'room': topic.room})
    # Acknowledged only once the room is joined
    return {'room': topic.room}


def handle_unsubscribe(data):
    try:
        topic = Topic.from_dict(data)
    except ValueError as exc:
        emit('error', {'message': str(exc)})
        return
    leave_room(topic.room)
    emit('unsubscribed', {'room': topic.room})


def handle_ping(data=None):
    emit('pong', data or {})


def broadcast_change(table, event_type, before=None, after=None):
    """Push one committed row change to every socket in the row's topic room."""
    payload = change_payload(table, event_type, before, after)
    # Use socketio.emit since this runs outside of a socket handler
    socketio.emit('change', payload, to=payload['topic'], namespace=FEED_NAMESPACE)


def register_feed_handlers(testing: bool = False) -> None:
    """Register change feed handlers.

    Always register on namespace '/feed'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = [FEED_NAMESPACE]
    if testing:
        namespaces.append('/')
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('subscribe', handle_subscribe, namespace=namespace)
        socketio.on_event('unsubscribe', handle_unsubscribe, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
