import pytest

from articphone import get_store
from articphone.models import StateEntry
from articphone.services.session.errors import StoreUnavailable
from articphone.services.session.progression import advance_round

pytestmark = pytest.mark.usefixtures('ticking_clock')


def open_room(signed_in, names):
    """Sign in one client per name; the first creates the room, the rest join."""
    host, host_uid = signed_in()
    res = host.post('/api/rooms', json={'name': names[0]})
    assert res.status_code == 201
    code = res.get_json()['room_code']
    players = [(host, host_uid)]
    for name in names[1:]:
        guest, uid = signed_in()
        res = guest.post('/api/rooms/join', json={'room_code': code.lower(), 'name': name})
        assert res.status_code == 201
        players.append((guest, uid))
    return code, players


def test_index_and_health(client):
    assert client.get('/').status_code == 200
    assert client.get('/health').get_json() == {'status': 'ok'}


def test_anonymous_identity_can_be_resumed(client):
    res = client.post('/api/identity/anonymous')
    assert res.status_code == 201
    creds = res.get_json()
    assert creds['uid'] and creds['token']
    assert client.get('/api/identity/me').get_json()['uid'] == creds['uid']

    assert client.post('/api/identity/logout').status_code == 200
    res = client.get('/api/identity/me')
    assert res.status_code == 401
    assert res.get_json()['error'] == 'not_signed_in'

    assert client.post('/api/identity/resume', json={'uid': creds['uid'], 'token': 'nope'}).status_code == 401
    assert client.post('/api/identity/resume', json={}).status_code == 400
    res = client.post('/api/identity/resume', json=creds)
    assert res.status_code == 200
    assert client.get('/api/identity/me').get_json()['uid'] == creds['uid']


def test_room_routes_need_an_identity(client):
    res = client.post('/api/rooms', json={'name': 'Ann'})
    assert res.status_code == 401


def test_create_room_seats_the_creator_as_host(signed_in):
    code, [(host, uid)] = open_room(signed_in, ['Ann'])
    state = host.get(f'/api/rooms/{code}/state').get_json()
    assert state['code'] == code
    assert state['status'] == 'LOBBY'
    assert state['isHost'] is True
    assert state['hostId'] == uid
    assert [p['name'] for p in state['players']] == ['Ann']
    assert state['turn'] is None


def test_each_client_keeps_its_own_identity(signed_in):
    ann, ann_uid = signed_in()
    ben, ben_uid = signed_in()
    assert ann_uid != ben_uid
    assert ann.get('/api/identity/me').get_json()['uid'] == ann_uid
    assert ben.get('/api/identity/me').get_json()['uid'] == ben_uid
    assert ann.get('/api/identity/me').get_json()['uid'] == ann_uid


def test_create_room_requires_a_name(flask_app, signed_in):
    host, _ = signed_in()
    res = host.post('/api/rooms', json={'name': '  '})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'name_required'
    with flask_app.app_context():
        assert StateEntry.query.count() == 0


def test_join_validation(signed_in):
    code, _ = open_room(signed_in, ['Ann'])
    guest, _ = signed_in()

    res = guest.post('/api/rooms/join', json={'room_code': 'AB!', 'name': 'Ben'})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'invalid_room_code'

    missing = 'ZZZZ' if code != 'ZZZZ' else 'YYYY'
    res = guest.post('/api/rooms/join', json={'room_code': missing, 'name': 'Ben'})
    assert res.status_code == 404
    assert res.get_json()['error'] == 'room_not_found'

    res = guest.post('/api/rooms/join', json={'room_code': code})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'name_required'


def test_start_rules(signed_in):
    code, [(host, _)] = open_room(signed_in, ['Ann'])
    res = host.post(f'/api/rooms/{code}/start')
    assert res.status_code == 400
    assert res.get_json() == {'error': 'not_enough_players', 'message': 'Need at least 2 players!'}

    guest, _ = signed_in()
    guest.post('/api/rooms/join', json={'room_code': code, 'name': 'Ben'})
    res = guest.post(f'/api/rooms/{code}/start')
    assert res.status_code == 403
    assert res.get_json()['error'] == 'not_host'

    res = host.post(f'/api/rooms/{code}/start')
    assert res.status_code == 200
    started = res.get_json()
    assert started['status'] == 'PLAYING'
    assert started['round'] == 0
    assert len(started['playerOrder']) == 2

    late, _ = signed_in()
    res = late.post('/api/rooms/join', json={'room_code': code, 'name': 'Cat'})
    assert res.status_code == 403
    assert res.get_json()['error'] == 'game_in_progress'


def test_settings_are_host_only_until_start(signed_in):
    code, [(host, _), (guest, _)] = open_room(signed_in, ['Ann', 'Ben'])

    res = host.patch(f'/api/rooms/{code}/settings', json={'baseTime': 120, 'timerMode': 'DYNAMIC'})
    assert res.status_code == 200
    assert res.get_json()['settings']['baseTime'] == 120

    assert guest.patch(f'/api/rooms/{code}/settings', json={'baseTime': 30}).status_code == 403
    res = host.patch(f'/api/rooms/{code}/settings', json={'baseTime': 'soon'})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'invalid_setting'

    started = host.post(f'/api/rooms/{code}/start').get_json()
    assert started['timer'] == 120
    res = host.patch(f'/api/rooms/{code}/settings', json={'baseTime': 30})
    assert res.status_code == 400
    assert res.get_json()['error'] == 'settings_locked'


def test_pages_flow_through_to_the_gallery(flask_app, signed_in):
    code, players = open_room(signed_in, ['Ann', 'Ben'])
    host = players[0][0]
    host.post(f'/api/rooms/{code}/start')
    store = get_store(flask_app)

    for player, uid in players:
        turn = player.get(f'/api/rooms/{code}/state').get_json()['turn']
        assert turn['activity'] == 'WRITE'
        assert turn['ownerId'] == uid
        res = player.post(f'/api/rooms/{code}/pages', json={'value': f'prompt by {uid}'})
        assert res.status_code == 200
        assert res.get_json()['accepted'] is True

    # A retry is absorbed, not an error
    res = host.post(f'/api/rooms/{code}/pages', json={'value': 'changed my mind', 'round': 0})
    assert res.get_json()['accepted'] is False

    assert advance_round(store, code, 0)
    for player, uid in players:
        turn = player.get(f'/api/rooms/{code}/state').get_json()['turn']
        assert turn['activity'] == 'DRAW'
        assert turn['source']['author'] == turn['ownerId'] != uid
        assert turn['source']['value'] == f"prompt by {turn['ownerId']}"
        player.post(f'/api/rooms/{code}/pages', json={'value': 'data:image/png;base64,AAAA'})

    res = host.get(f'/api/rooms/{code}/gallery')
    assert res.status_code == 400
    assert res.get_json()['error'] == 'game_not_finished'

    assert advance_round(store, code, 1)
    state = host.get(f'/api/rooms/{code}/state').get_json()
    assert state['status'] == 'GALLERY'
    assert state['turn'] is None

    res = host.get(f'/api/rooms/{code}/gallery')
    assert res.status_code == 200
    albums = res.get_json()['albums']
    assert [a['ownerId'] for a in albums] == state['playerOrder']
    for album in albums:
        assert [p['round'] for p in album['pages']] == [0, 1]
        assert album['pages'][0]['value'] == f"prompt by {album['ownerId']}"
        assert album['pages'][1]['type'] == 'DRAWING'


def test_submission_from_outside_the_room_is_forbidden(signed_in):
    code, [(host, _), _guest] = open_room(signed_in, ['Ann', 'Ben'])
    host.post(f'/api/rooms/{code}/start')
    stranger, _ = signed_in()
    res = stranger.post(f'/api/rooms/{code}/pages', json={'value': 'hi'})
    assert res.status_code == 403
    assert res.get_json()['error'] == 'not_a_player'


def test_store_outage_is_reported_as_unavailable(flask_app, signed_in, monkeypatch):
    code, [(host, _), _guest] = open_room(signed_in, ['Ann', 'Ben'])
    host.post(f'/api/rooms/{code}/start')

    def down(*args, **kwargs):
        raise StoreUnavailable('db down')

    monkeypatch.setattr(get_store(flask_app), 'set_if_absent', down)
    res = host.post(f'/api/rooms/{code}/pages', json={'value': 'hello'})
    assert res.status_code == 503
    assert res.get_json()['error'] == 'store_unavailable'
