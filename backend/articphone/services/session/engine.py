import threading

from articphone import socketio
from .enforcer import DisconnectEnforcer
from .errors import RoomNotFound, StoreUnavailable
from .ledger import load_state, notebooks
from .progression import ProgressionController
from .room import STATUS_PLAYING, TIMER_DYNAMIC, Room, now_ms, room_path
from .timer import PenaltyDetector, TimerController


class HostLoop:
    """Repeating host-only task.

    Runs ``step`` every ``interval`` seconds until ``stop()`` is called or
    ``step`` returns False. Store failures are logged and retried on the
    next tick. Not started in TESTING unless ENABLE_SCHEDULER_IN_TESTS is set.
    """

    def __init__(self, app, name, interval, step):
        self.app = app
        self.name = name
        self.interval = interval
        self.step = step
        self.running = False
        self._stopped = threading.Event()

    def start(self):
        if self.app.config.get('TESTING') and not self.app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
            return
        self.running = True
        socketio.start_background_task(self._run)

    def stop(self):
        self._stopped.set()

    def _run(self):
        self.app.logger.info(f"[loop-start] {self.name} interval={self.interval}s")
        while not self._stopped.is_set():
            socketio.sleep(self.interval)
            if self._stopped.is_set():
                break
            try:
                if self.step() is False:
                    break
            except RoomNotFound:
                break
            except StoreUnavailable as exc:
                self.app.logger.warning(f"[store-unavailable] {self.name}: {exc}")
        self.running = False
        self.app.logger.info(f"[loop-stop] {self.name}")


class RoomSession:
    """One connected client's view of a room.

    Every client runs its own session. Whichever session currently satisfies
    the host predicate also drives progression, the dynamic timer and the
    disconnect enforcer; all of their writes are fill-once or conditional, so
    two sessions that both believe they are host cannot corrupt the room.
    """

    def __init__(self, app, store, room_code, player_id, emit=None, clock=now_ms):
        self.app = app
        self.store = store
        self.room_code = room_code
        self.player_id = player_id
        self.emit = emit
        self.progression = ProgressionController(app, store, room_code)
        self.timer = TimerController(app, store, room_code)
        self.enforcer = DisconnectEnforcer(app, store, room_code, clock=clock)
        self.penalties = PenaltyDetector()
        self.room = None
        self.is_host = False
        self.closed = False
        self._loops = []
        self._subscription = None
        self._lock = threading.RLock()

    def start(self):
        self._subscription = self.store.subscribe(room_path(self.room_code), self._on_change)
        return self

    def close(self):
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._release_host()
            if self._subscription is not None:
                self._subscription.close()
        self.app.logger.info(f"[session-closed] room={self.room_code} player={self.player_id}")

    def __enter__(self):
        return self.start()

    def __exit__(self, *exc):
        self.close()
        return False

    @property
    def loops(self):
        return list(self._loops)

    def _on_change(self, snapshot):
        with self._lock:
            if self.closed:
                return
            room = Room.from_snapshot(self.room_code, snapshot)
            if room is None:
                return
            previous_timer = self.room.timer if self.room else None
            self.room = room
            if self.penalties.observe(room.timer) and self.emit is not None:
                self.emit('timer_penalty', {
                    'room_code': self.room_code,
                    'timer': room.timer,
                    'previous': previous_timer,
                })

            if room.is_terminal:
                self.app.logger.info(f"[session-gallery] room={self.room_code} player={self.player_id}")
                self.close()
                return

            should_host = room.status == STATUS_PLAYING and room.host_id == self.player_id
            if should_host and not self.is_host:
                self._acquire_host(room)
            elif not should_host and self.is_host:
                self._release_host()

            if self.is_host:
                books = notebooks(snapshot.get('books'))
                try:
                    self.timer.observe(room, books)
                    self.progression.observe(room, books)
                except StoreUnavailable as exc:
                    self.app.logger.warning(f"[store-unavailable] room={self.room_code} host update: {exc}")

    def _acquire_host(self, room):
        self.is_host = True
        self.app.logger.info(f"[host-acquired] room={self.room_code} player={self.player_id} round={room.round}")
        cfg = self.app.config
        self._loops = [
            HostLoop(self.app, f"enforcer:{self.room_code}", float(cfg.get('ENFORCER_INTERVAL_SEC', 1.0)), self.sweep),
        ]
        if room.settings.timer_mode == TIMER_DYNAMIC:
            self._loops.append(
                HostLoop(self.app, f"timer:{self.room_code}", float(cfg.get('TIMER_TICK_SEC', 1.0)), self.tick)
            )
        for loop in self._loops:
            loop.start()

    def _release_host(self):
        if not self.is_host:
            return
        self.is_host = False
        for loop in self._loops:
            loop.stop()
        self._loops = []
        self.app.logger.info(f"[host-released] room={self.room_code} player={self.player_id}")

    def _still_host(self):
        with self._lock:
            return self.is_host and not self.closed

    def tick(self) -> bool:
        """Timer loop step."""
        if not self._still_host():
            return False
        return self.timer.tick()

    def sweep(self) -> bool:
        """Enforcer loop step: skip stale players, then retry a pending advance."""
        if not self._still_host():
            return False
        room, books = load_state(self.store, self.room_code)
        if room.is_terminal:
            return False
        self.enforcer.sweep(room, books)
        self.progression.observe(room, books)
        return True
