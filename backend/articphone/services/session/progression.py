from articphone import socketio
from .errors import StoreUnavailable
from .ledger import ring_complete
from .room import TIMER_DYNAMIC, room_path


def advance_round(store, room_code: str, from_round: int, base_time=None) -> bool:
    """Move the room from ``from_round`` to ``from_round + 1``.

    The write is conditional on the stored round still being ``from_round``,
    so hosts racing on the same condition advance the room exactly once.
    ``base_time`` (DYNAMIC rooms) resets the shared timer and its charged
    submission count in the same write.
    """
    updates = {room_path(room_code, 'round'): from_round + 1}
    if base_time is not None:
        updates[room_path(room_code, 'timer')] = base_time
        updates[room_path(room_code, 'timerCharged')] = 0
    return store.compare_and_update(room_path(room_code, 'round'), from_round, updates)


class ProgressionController:
    """Advance the round once every player's page for it is in.

    - Runs only in the session that currently holds host status
    - Waits ``ADVANCE_GRACE_SEC`` before advancing
    - Schedules at most one advance per round from this session
    """

    def __init__(self, app, store, room_code):
        self.app = app
        self.store = store
        self.room_code = room_code
        self.grace_sec = float(app.config.get('ADVANCE_GRACE_SEC', 1.0))
        self._scheduled = set()

    def observe(self, room, books) -> None:
        if room.is_terminal or room.round in self._scheduled:
            return
        if not ring_complete(room, books):
            return

        from_round = room.round
        base_time = room.settings.base_time if room.settings.timer_mode == TIMER_DYNAMIC else None
        self._scheduled.add(from_round)
        self.app.logger.info(
            f"[ring-complete] room={self.room_code} round={from_round} players={room.n} grace={self.grace_sec}s"
        )
        if self.app.config.get('TESTING'):
            self._advance_later(from_round, base_time)
        else:
            socketio.start_background_task(self._advance_later, from_round, base_time)

    def _advance_later(self, from_round, base_time):
        if self.grace_sec > 0:
            socketio.sleep(self.grace_sec)
        try:
            advanced = advance_round(self.store, self.room_code, from_round, base_time)
        except StoreUnavailable as exc:
            # Let the next observation schedule it again.
            self._scheduled.discard(from_round)
            self.app.logger.warning(f"[store-unavailable] room={self.room_code} advance from={from_round}: {exc}")
            return
        if advanced:
            self.app.logger.info(f"[round-advance] room={self.room_code} round={from_round}->{from_round + 1}")
        else:
            self.app.logger.info(f"[advance-skip] room={self.room_code} round={from_round} already advanced")
