from flask import current_app, request
from flask_login import current_user
from flask_socketio import emit, join_room, leave_room
from articphone import socketio, get_store
from articphone.services.session.engine import RoomSession
from articphone.services.session.errors import NotAPlayer, SessionError, StoreUnavailable
from articphone.services.session.room import (
    PRESENCE_OFFLINE,
    PRESENCE_ONLINE,
    Presence,
    load_room,
    normalize_room_code,
    now_ms,
    room_path,
)
from typing import Dict, Any, Tuple
import threading

NAMESPACE = '/ws'


def socket_room(room_code: str) -> str:
    return f"room:{room_code}"


def publish_state_change(paths) -> None:
    """Forward committed store paths to the sockets watching each room."""
    by_room: Dict[str, list] = {}
    for path in paths:
        parts = path.split('/')
        if len(parts) >= 2 and parts[0] == 'rooms':
            by_room.setdefault(parts[1], []).append(path)
    for room_code, changed in by_room.items():
        socketio.emit('state_update', {'room_code': room_code, 'paths': changed}, to=socket_room(room_code), namespace=NAMESPACE)


def handle_connect():
    emit('connected', {'message': f'Connected to {NAMESPACE}'})


def handle_disconnect(*args):
    _leave(_get_sid())


def handle_join_room(data):
    if not current_user.is_authenticated:
        emit('error', {'error': 'not_signed_in', 'message': 'Sign in first'})
        return
    store = get_store()
    uid = current_user.uid
    try:
        room_code = normalize_room_code((data or {}).get('room_code'))
        room = load_room(store, room_code)
        if room.player(uid) is None:
            raise NotAPlayer('Join the room before connecting to it')
    except SessionError as exc:
        emit('error', exc.to_dict())
        return

    sid = _get_sid()
    if sid in _sid_to_ctx:
        _leave(sid)
    join_room(socket_room(room_code))
    _sid_to_ctx[sid] = {'room_code': room_code, 'uid': uid}
    try:
        _connection_opened(store, room_code, uid)
    except StoreUnavailable as exc:
        emit('error', exc.to_dict())
        return
    session = RoomSession(
        current_app._get_current_object(),
        store,
        room_code,
        uid,
        emit=lambda event, payload: socketio.emit(event, payload, to=sid, namespace=NAMESPACE),
    )
    _sessions[sid] = session
    emit('joined', {'room': socket_room(room_code), 'room_code': room_code})
    session.start()


def handle_leave_room(data):
    sid = _get_sid()
    ctx = _sid_to_ctx.get(sid)
    if not ctx:
        emit('error', {'error': 'not_in_room', 'message': 'Not connected to a room'})
        return
    leave_room(socket_room(ctx['room_code']))
    _leave(sid)
    emit('left', {'room': socket_room(ctx['room_code'])})


def handle_ping(data):
    emit('pong', data or {})

# ---- Presence and per-connection session bookkeeping ----

_sid_to_ctx: Dict[str, Dict[str, Any]] = {}
_sessions: Dict[str, RoomSession] = {}
_connection_count: Dict[Tuple[str, str], int] = {}
_count_lock = threading.Lock()


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _write_presence(store, room_code: str, uid: str, state: str) -> None:
    store.set(room_path(room_code, 'players', uid, 'presence'), Presence(state, now_ms()).to_dict())


def _connection_opened(store, room_code: str, uid: str) -> None:
    """First connection for (room, player) marks them online."""
    key = (room_code, uid)
    with _count_lock:
        _connection_count[key] = _connection_count.get(key, 0) + 1
        first = _connection_count[key] == 1
    if first:
        _write_presence(store, room_code, uid, PRESENCE_ONLINE)


def _leave(sid: str) -> None:
    ctx = _sid_to_ctx.pop(sid, None)
    if not ctx:
        return
    session = _sessions.pop(sid, None)
    if session is not None:
        session.close()
    key = (ctx['room_code'], ctx['uid'])
    with _count_lock:
        remaining = max(0, _connection_count.get(key, 0) - 1)
        if remaining:
            _connection_count[key] = remaining
        else:
            _connection_count.pop(key, None)
    if remaining == 0:
        # Last tab for this player is gone
        try:
            _write_presence(get_store(), ctx['room_code'], ctx['uid'], PRESENCE_OFFLINE)
        except StoreUnavailable as exc:
            current_app.logger.warning(f"[store-unavailable] presence offline room={ctx['room_code']} player={ctx['uid']}: {exc}")


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on namespace '/ws'."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('join_room', handle_join_room, namespace=NAMESPACE)
    socketio.on_event('leave_room', handle_leave_room, namespace=NAMESPACE)
    socketio.on_event('ping', handle_ping, namespace=NAMESPACE)
