from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user

from articphone import get_store
from articphone.services.session.errors import SessionError
from articphone.services.session.ledger import gallery, load_state, submit_page, turn_for
from articphone.services.session.room import (
    create_room,
    join_room,
    normalize_room_code,
    start_game,
    update_settings,
    validate_name,
)


rooms = Blueprint('rooms', __name__)


@rooms.errorhandler(SessionError)
def handle_session_error(exc):
    current_app.logger.info(f"[rejected] {request.method} {request.path} error={exc.error} status={exc.status}")
    return jsonify(exc.to_dict()), exc.status


@rooms.route('', methods=['POST'])
@login_required
def create_room_and_join():
    """Create a room and seat the caller as its first player (the host)."""
    data = request.get_json(silent=True) or {}
    name = validate_name(data.get('name'))
    store = get_store()
    room = create_room(store, settings=data.get('settings'))
    player = join_room(store, room.code, current_user.uid, name)
    return jsonify({'room_code': room.code, 'player': player.to_dict()}), 201


@rooms.route('/join', methods=['POST'])
@login_required
def join():
    data = request.get_json(silent=True) or {}
    code = normalize_room_code(data.get('room_code'))
    player = join_room(get_store(), code, current_user.uid, data.get('name'))
    return jsonify({'room_code': code, 'player': player.to_dict()}), 201


@rooms.route('/<string:room_code>/settings', methods=['PATCH'])
@login_required
def change_settings(room_code):
    data = request.get_json(silent=True) or {}
    room = update_settings(get_store(), normalize_room_code(room_code), current_user.uid, data)
    return jsonify(room.to_dict())


@rooms.route('/<string:room_code>/start', methods=['POST'])
@login_required
def start(room_code):
    min_players = int(current_app.config.get('MIN_PLAYERS', 2))
    room = start_game(get_store(), normalize_room_code(room_code), current_user.uid, min_players=min_players)
    return jsonify(room.to_dict())


@rooms.route('/<string:room_code>/pages', methods=['POST'])
@login_required
def submit(room_code):
    data = request.get_json(silent=True) or {}
    accepted, page = submit_page(
        get_store(),
        normalize_room_code(room_code),
        current_user.uid,
        data.get('value'),
        data.get('round'),
    )
    # A filled slot is not an error: the first page written wins.
    return jsonify({'accepted': accepted, 'page': page.to_dict()})


@rooms.route('/<string:room_code>/state', methods=['GET'])
@login_required
def get_state(room_code):
    room, books = load_state(get_store(), normalize_room_code(room_code))
    payload = room.to_dict()
    payload['isHost'] = room.host_id == current_user.uid
    payload['turn'] = turn_for(room, books, current_user.uid)
    return jsonify(payload)


@rooms.route('/<string:room_code>/gallery', methods=['GET'])
@login_required
def get_gallery(room_code):
    room, books = load_state(get_store(), normalize_room_code(room_code))
    return jsonify({'room_code': room.code, 'albums': gallery(room, books)})
