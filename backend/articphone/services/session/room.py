"""Room lifecycle: LOBBY -> PLAYING -> (implicit) GALLERY.

Host-ness is never stored. Every participant derives it from the player list
(earliest ``joinedAt`` still present), so all of them agree on it without
talking to each other.
"""
import random
import re
import string
import time
from dataclasses import dataclass, field
from typing import List, Optional

from flask import current_app

from .errors import NotHost, RoomNotFound, ValidationError
from .rotation import START_DRAW, START_WRITE

STATUS_LOBBY = 'LOBBY'
STATUS_PLAYING = 'PLAYING'
STATUS_GALLERY = 'GALLERY'

TIMER_MANUAL = 'MANUAL'
TIMER_DYNAMIC = 'DYNAMIC'

PRESENCE_ONLINE = 'online'
PRESENCE_OFFLINE = 'offline'

ROOM_CODE_LENGTH = 4
MAX_NAME_LENGTH = 24
MIN_BASE_TIME = 10
MAX_BASE_TIME = 600

_ROOM_CODE_RE = re.compile(r'^[A-Z0-9]{4}$')


def now_ms() -> int:
    return int(time.time() * 1000)


def room_path(code: str, *parts) -> str:
    return '/'.join(['rooms', code] + [str(p) for p in parts])


def generate_room_code(length=ROOM_CODE_LENGTH):
    return ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))


def normalize_room_code(raw) -> str:
    code = str(raw or '').strip().upper()
    if not _ROOM_CODE_RE.match(code):
        raise ValidationError('invalid_room_code', 'Room codes are 4 letters or digits')
    return code


def validate_name(raw) -> str:
    name = str(raw or '').strip()
    if not name:
        raise ValidationError('name_required', 'Please enter a nickname')
    if len(name) > MAX_NAME_LENGTH:
        raise ValidationError('invalid_name', f'Names are at most {MAX_NAME_LENGTH} characters')
    if '<' in name or '>' in name or any(ord(ch) < 32 for ch in name):
        raise ValidationError('invalid_name', 'Name contains invalid characters')
    return name


@dataclass
class Settings:
    timer_mode: str = TIMER_MANUAL
    base_time: int = 60
    start_mode: str = START_WRITE
    ghost_mode: bool = False

    _KEYS = {
        'timerMode': 'timer_mode',
        'baseTime': 'base_time',
        'startMode': 'start_mode',
        'ghostMode': 'ghost_mode',
    }

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        defaults = cls()
        return cls(
            timer_mode=data.get('timerMode', defaults.timer_mode),
            base_time=data.get('baseTime', defaults.base_time),
            start_mode=data.get('startMode', defaults.start_mode),
            ghost_mode=data.get('ghostMode', defaults.ghost_mode),
        )

    def to_dict(self):
        return {
            'timerMode': self.timer_mode,
            'baseTime': self.base_time,
            'startMode': self.start_mode,
            'ghostMode': self.ghost_mode,
        }

    def merged(self, changes) -> 'Settings':
        """Return a validated copy with camelCase ``changes`` applied."""
        changes = changes or {}
        if not isinstance(changes, dict):
            raise ValidationError('invalid_setting', 'settings must be an object')
        unknown = set(changes) - set(self._KEYS)
        if unknown:
            raise ValidationError('unknown_setting', f"Unknown settings: {', '.join(sorted(unknown))}")
        data = self.to_dict()
        data.update(changes)
        settings = Settings.from_dict(data)
        settings.validate()
        return settings

    def validate(self):
        if self.timer_mode not in (TIMER_MANUAL, TIMER_DYNAMIC):
            raise ValidationError('invalid_setting', 'timerMode must be MANUAL or DYNAMIC')
        if self.start_mode not in (START_WRITE, START_DRAW):
            raise ValidationError('invalid_setting', 'startMode must be WRITE or DRAW')
        if isinstance(self.base_time, bool) or not isinstance(self.base_time, int):
            raise ValidationError('invalid_setting', 'baseTime must be an integer')
        if not MIN_BASE_TIME <= self.base_time <= MAX_BASE_TIME:
            raise ValidationError('invalid_setting', f'baseTime must be between {MIN_BASE_TIME} and {MAX_BASE_TIME}')
        if not isinstance(self.ghost_mode, bool):
            raise ValidationError('invalid_setting', 'ghostMode must be true or false')


@dataclass
class Presence:
    state: str
    last_changed: int = 0

    @classmethod
    def from_dict(cls, data):
        if not data:
            return None
        return cls(state=data.get('state', PRESENCE_OFFLINE), last_changed=int(data.get('lastChanged') or 0))

    def to_dict(self):
        return {'state': self.state, 'lastChanged': self.last_changed}


@dataclass
class Player:
    id: str
    name: str
    joined_at: int
    avatar: str = ''
    presence: Optional[Presence] = None

    @property
    def is_present(self) -> bool:
        # No presence record yet means the transport has not reported a drop.
        return self.presence is None or self.presence.state != PRESENCE_OFFLINE

    @classmethod
    def from_dict(cls, player_id, data):
        data = data or {}
        return cls(
            id=data.get('id', player_id),
            name=data.get('name', ''),
            joined_at=int(data.get('joinedAt') or 0),
            avatar=data.get('avatar', ''),
            presence=Presence.from_dict(data.get('presence')),
        )

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'avatar': self.avatar,
            'joinedAt': self.joined_at,
            'presence': self.presence.to_dict() if self.presence else None,
        }


@dataclass
class Room:
    code: str
    status: str = STATUS_LOBBY
    round: int = 0
    settings: Settings = field(default_factory=Settings)
    players: List[Player] = field(default_factory=list)
    player_order: List[str] = field(default_factory=list)
    timer: Optional[int] = None
    timer_charged: int = 0

    @classmethod
    def from_snapshot(cls, code, snapshot):
        if not isinstance(snapshot, dict) or 'status' not in snapshot:
            return None
        players = [Player.from_dict(pid, data) for pid, data in (snapshot.get('players') or {}).items()]
        players.sort(key=lambda p: (p.joined_at, p.id))
        return cls(
            code=code,
            status=snapshot['status'],
            round=int(snapshot.get('round') or 0),
            settings=Settings.from_dict(snapshot.get('settings')),
            players=players,
            player_order=list(snapshot.get('playerOrder') or []),
            timer=snapshot.get('timer'),
            timer_charged=int(snapshot.get('timerCharged') or 0),
        )

    @property
    def n(self) -> int:
        return len(self.player_order)

    @property
    def is_terminal(self) -> bool:
        return self.status == STATUS_PLAYING and self.n > 0 and self.round >= self.n

    @property
    def effective_status(self) -> str:
        return STATUS_GALLERY if self.is_terminal else self.status

    @property
    def host_id(self) -> Optional[str]:
        for player in self.players:
            if player.is_present:
                return player.id
        return None

    def player(self, player_id) -> Optional[Player]:
        for player in self.players:
            if player.id == player_id:
                return player
        return None

    def to_dict(self):
        return {
            'code': self.code,
            'status': self.effective_status,
            'round': self.round,
            'settings': self.settings.to_dict(),
            'timer': self.timer,
            'playerOrder': self.player_order,
            'hostId': self.host_id,
            'players': [p.to_dict() for p in self.players],
        }


def load_room(store, code) -> Room:
    room = Room.from_snapshot(code, store.get(room_path(code)))
    if room is None:
        raise RoomNotFound(code)
    return room


def create_room(store, settings=None, code=None) -> Room:
    """Create an empty lobby; ``settings`` are camelCase overrides."""
    base = Settings(base_time=int(current_app.config.get('DEFAULT_BASE_TIME', 60)))
    settings = base.merged(settings or {})
    code = normalize_room_code(code) if code else generate_room_code()
    while store.get(room_path(code, 'status')) is not None:
        current_app.logger.warning(f"[room-code-collision] code={code}")
        code = generate_room_code()
    store.update({
        room_path(code, 'status'): STATUS_LOBBY,
        room_path(code, 'round'): 0,
        room_path(code, 'settings'): settings.to_dict(),
    })
    current_app.logger.info(f"[room-created] room={code} settings={settings.to_dict()}")
    return load_room(store, code)


def join_room(store, code, player_id, name, joined_at=None) -> Player:
    code = normalize_room_code(code)
    name = validate_name(name)
    room = load_room(store, code)
    existing = room.player(player_id)
    if existing is not None:
        return existing
    if room.status != STATUS_LOBBY:
        raise ValidationError('game_in_progress', 'This game has already started', status=403)
    player = Player(
        id=player_id,
        name=name,
        joined_at=joined_at if joined_at is not None else now_ms(),
        avatar=name[0].upper(),
    )
    record = player.to_dict()
    record.pop('presence')
    store.set(room_path(code, 'players', player_id), record)
    current_app.logger.info(f"[player-joined] room={code} player={player_id} name={name!r}")
    return player


def update_settings(store, code, player_id, changes) -> Room:
    room = load_room(store, code)
    if room.status != STATUS_LOBBY:
        raise ValidationError('settings_locked', 'Settings cannot change once the game has started')
    if room.host_id != player_id:
        raise NotHost('Only the host may change settings')
    settings = room.settings.merged(changes)
    store.set(room_path(code, 'settings'), settings.to_dict())
    room.settings = settings
    return room


def start_game(store, code, player_id, min_players=2, rng=None) -> Room:
    """Fix the player order and open round 0 in one atomic update."""
    room = load_room(store, code)
    if room.status != STATUS_LOBBY:
        # Already started: starting is idempotent.
        return room
    if room.host_id != player_id:
        raise NotHost('Only the host may start the game')
    if len(room.players) < min_players:
        raise ValidationError('not_enough_players', f'Need at least {min_players} players!')

    order = [p.id for p in room.players]
    (rng or random).shuffle(order)
    dynamic = room.settings.timer_mode == TIMER_DYNAMIC
    updates = {
        room_path(code, 'status'): STATUS_PLAYING,
        room_path(code, 'round'): 0,
        room_path(code, 'playerOrder'): order,
        room_path(code, 'timer'): room.settings.base_time if dynamic else None,
        room_path(code, 'timerCharged'): 0 if dynamic else None,
    }
    for pid in order:
        updates[room_path(code, 'books', pid)] = {}

    if store.compare_and_update(room_path(code, 'status'), STATUS_LOBBY, updates):
        current_app.logger.info(f"[game-started] room={code} order={order} timer_mode={room.settings.timer_mode}")
    return load_room(store, code)
