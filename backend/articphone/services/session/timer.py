"""Shared countdown for DYNAMIC rooms.

The host ticks the timer down once a second and forces the round forward when
it runs out. Every new submission in the round cuts the remaining time by
``TIMER_PENALTY_RATIO``, never below ``TIMER_FLOOR_SEC`` (a timer already at
or under the floor is left alone). Each submission is charged once, tracked
by ``timerCharged``.
"""
import math

from .ledger import filled_players, load_state
from .progression import advance_round
from .room import STATUS_PLAYING, TIMER_DYNAMIC, load_room, room_path


def reduced_time(current: int, ratio: float = 0.10, floor: int = 10) -> int:
    if current <= floor:
        return current
    return max(floor, int(math.floor(current * (1 - ratio))))


class PenaltyDetector:
    """Spot a penalty from consecutive timer values (display only)."""

    def __init__(self, threshold: int = 2):
        self.threshold = threshold
        self.previous = None

    def observe(self, timer) -> bool:
        previous, self.previous = self.previous, timer
        if previous is None or timer is None:
            return False
        return previous - timer > self.threshold


class TimerController:

    def __init__(self, app, store, room_code):
        self.app = app
        self.store = store
        self.room_code = room_code
        self.ratio = float(app.config.get('TIMER_PENALTY_RATIO', 0.10))
        self.floor = int(app.config.get('TIMER_FLOOR_SEC', 10))

    @property
    def timer_path(self):
        return room_path(self.room_code, 'timer')

    @property
    def charged_path(self):
        return room_path(self.room_code, 'timerCharged')

    def observe(self, room, books) -> None:
        """Cut the timer once for every submission not yet charged this round.

        The charged count lives in the store next to the timer, so duplicate
        hosts and a host taking over mid-round never charge a page twice.
        """
        if room.is_terminal or room.settings.timer_mode != TIMER_DYNAMIC:
            return
        count = len(filled_players(room, books))
        if count <= room.timer_charged:
            return
        while True:
            fresh = load_room(self.store, self.room_code)
            if fresh.round != room.round or fresh.is_terminal or fresh.timer is None:
                return
            charged = fresh.timer_charged
            if count <= charged:
                return
            current = fresh.timer
            remaining = current
            for _ in range(count - charged):
                remaining = reduced_time(remaining, self.ratio, self.floor)
            updates = {self.timer_path: remaining, self.charged_path: count}
            # Guarded on the timer: a tick landing first sends us round again.
            if self.store.compare_and_update(self.timer_path, current, updates):
                if remaining < current:
                    self.app.logger.info(
                        f"[timer-penalty] room={self.room_code} round={room.round} timer={current}->{remaining} "
                        f"submitted={count}/{room.n}"
                    )
                return

    def tick(self) -> bool:
        """Count down one second; returns False once there is nothing left to time."""
        room, _ = load_state(self.store, self.room_code)
        if room.status != STATUS_PLAYING or room.is_terminal:
            return False
        if room.settings.timer_mode != TIMER_DYNAMIC:
            return False

        base_time = room.settings.base_time
        current = room.timer if room.timer is not None else base_time
        remaining = current - 1
        if remaining <= 0:
            if advance_round(self.store, self.room_code, room.round, base_time):
                self.app.logger.info(
                    f"[timer-expired] room={self.room_code} round={room.round}->{room.round + 1}"
                )
            return True
        if room.timer is None:
            self.store.set(self.timer_path, remaining)
        else:
            self.store.compare_and_update(self.timer_path, current, {self.timer_path: remaining})
        return True
