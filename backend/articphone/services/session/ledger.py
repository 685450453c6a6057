"""Submission ledger: one single-assignment page per (notebook, round).

The ledger never overwrites. A slot is filled by whichever write reaches the
store first (a player, or the disconnect enforcer on their behalf) and stays
that way; later writes to the same slot are no-ops.
"""
from dataclasses import dataclass

from flask import current_app

from .errors import NotAPlayer, RoomNotFound, ValidationError
from .room import STATUS_PLAYING, Room, load_room, room_path
from .rotation import PAGE_PROMPT, is_draw_round, owner_of, page_type_for

PLACEHOLDER_VALUE = '...'
MAX_PROMPT_LENGTH = 200


@dataclass(frozen=True)
class Page:
    type: str
    value: str
    author: str

    @classmethod
    def from_dict(cls, data):
        return cls(type=data.get('type'), value=data.get('value'), author=data.get('author'))

    def to_dict(self):
        return {'type': self.type, 'value': self.value, 'author': self.author}


def notebooks(books):
    """Parse the ``books`` subtree into ``{owner_id: {round: Page}}``."""
    result = {}
    for owner_id, pages in (books or {}).items():
        if not isinstance(pages, dict):
            pages = {}
        result[owner_id] = {
            int(round_key): Page.from_dict(data)
            for round_key, data in pages.items()
            if isinstance(data, dict)
        }
    return result


def load_state(store, room_code):
    """Read the room and its notebooks from one snapshot."""
    snapshot = store.get(room_path(room_code))
    room = Room.from_snapshot(room_code, snapshot)
    if room is None:
        raise RoomNotFound(room_code)
    return room, notebooks(snapshot.get('books'))


class Ledger:

    def __init__(self, store, room_code):
        self.store = store
        self.room_code = room_code

    def submit(self, round_, owner_id, page) -> bool:
        """Write ``page`` at ``[owner_id][round_]`` unless the slot is taken."""
        return self.store.set_if_absent(room_path(self.room_code, 'books', owner_id, round_), page.to_dict())

    def read(self):
        return notebooks(self.store.get(room_path(self.room_code, 'books')))


def filled_players(room, books, round_=None):
    """Players whose page for ``round_`` (default: current round) is in."""
    round_ = room.round if round_ is None else round_
    done = []
    for player_id in room.player_order:
        owner_id = owner_of(round_, room.player_order, player_id)
        if round_ in books.get(owner_id, {}):
            done.append(player_id)
    return done


def pending_players(room, books, round_=None):
    done = set(filled_players(room, books, round_))
    return [pid for pid in room.player_order if pid not in done]


def ring_complete(room, books, round_=None) -> bool:
    return room.n > 0 and len(filled_players(room, books, round_)) == room.n


def turn_for(room, books, player_id):
    """What ``player_id`` has to do this round, or None if they are not playing."""
    if player_id not in room.player_order or room.is_terminal:
        return None
    round_ = room.round
    owner_id = owner_of(round_, room.player_order, player_id)
    pages = books.get(owner_id, {})
    source = pages.get(round_ - 1) if round_ > 0 else None
    return {
        'round': round_,
        'activity': 'DRAW' if is_draw_round(round_, room.settings.start_mode) else 'WRITE',
        'pageType': page_type_for(round_, room.settings.start_mode),
        'ownerId': owner_id,
        'source': source.to_dict() if source else None,
        'submitted': round_ in pages,
    }


def submit_page(store, room_code, player_id, value, round_=None):
    """Turn in ``player_id``'s page; returns ``(accepted, page)``.

    ``accepted`` is False when the slot was already filled or its round has
    closed, which is not an error: a retried or late submission simply loses.
    """
    room = load_room(store, room_code)
    if room.status != STATUS_PLAYING or room.is_terminal:
        raise ValidationError('not_playing', 'The game is not accepting pages')
    if player_id not in room.player_order:
        raise NotAPlayer('You are not playing in this room')
    if round_ is None:
        round_ = room.round
    try:
        round_ = int(round_)
    except (TypeError, ValueError):
        raise ValidationError('invalid_round', 'round must be an integer')
    if round_ < 0 or round_ > room.round:
        raise ValidationError('invalid_round', f'Round {round_} is not open')

    page_type = page_type_for(round_, room.settings.start_mode)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError('empty_page', 'Write something!' if page_type == PAGE_PROMPT else 'Draw something!')
    if page_type == PAGE_PROMPT:
        value = value.strip()
        if len(value) > MAX_PROMPT_LENGTH:
            raise ValidationError('page_too_long', f'Keep it under {MAX_PROMPT_LENGTH} characters')

    owner_id = owner_of(round_, room.player_order, player_id)
    page = Page(type=page_type, value=value, author=player_id)
    if round_ < room.round:
        # The next holder has already read this notebook; a closed round stays as it is.
        current_app.logger.info(
            f"[page-late] room={room_code} round={round_} current={room.round} author={player_id}"
        )
        return False, page
    accepted = Ledger(store, room_code).submit(round_, owner_id, page)
    current_app.logger.info(
        f"[page-submit] room={room_code} round={round_} owner={owner_id} author={player_id} "
        f"type={page_type} accepted={accepted}"
    )
    return accepted, page


def gallery(room, books):
    """Every notebook in play order, pages by round, with author names."""
    if not room.is_terminal:
        raise ValidationError('game_not_finished', 'The gallery opens when the last round ends')
    names = {p.id: p.name for p in room.players}
    albums = []
    for owner_id in room.player_order:
        pages = books.get(owner_id, {})
        albums.append({
            'ownerId': owner_id,
            'ownerName': names.get(owner_id, 'Unknown'),
            'pages': [
                dict(pages[r].to_dict(), round=r, authorName=names.get(pages[r].author, 'Unknown'))
                for r in sorted(pages)
            ],
        })
    return albums
