"""Skip players who have been offline too long so the ring can complete.

A skipped page carries the previous page of the same notebook forward, so the
next player still has something to draw or guess. If the player comes back
and submits before the skip lands, the ledger keeps whichever write was
first.
"""
from .ledger import PLACEHOLDER_VALUE, Ledger, Page, load_state, pending_players
from .room import PRESENCE_OFFLINE, now_ms
from .rotation import PAGE_SKIPPED, owner_of


class DisconnectEnforcer:

    def __init__(self, app, store, room_code, clock=now_ms):
        self.app = app
        self.store = store
        self.room_code = room_code
        self.clock = clock
        self.solo_threshold_ms = int(app.config.get('SOLO_STRAGGLER_THRESHOLD_SEC', 5)) * 1000
        self.threshold_ms = int(app.config.get('OFFLINE_THRESHOLD_SEC', 60)) * 1000
        self.ledger = Ledger(store, room_code)

    def threshold_for(self, pending_count: int) -> int:
        return self.solo_threshold_ms if pending_count == 1 else self.threshold_ms

    def sweep(self, room=None, books=None):
        """Skip every pending player past the threshold; returns the skipped ids."""
        if room is None or books is None:
            room, books = load_state(self.store, self.room_code)
        if room.is_terminal or not room.player_order:
            return []

        pending = pending_players(room, books)
        threshold = self.threshold_for(len(pending))
        now = self.clock()
        skipped = []
        for player_id in pending:
            player = room.player(player_id)
            if player is None:
                # No record left for this player: offline since forever.
                offline_since = 0
            elif player.presence is None or player.presence.state != PRESENCE_OFFLINE:
                continue
            else:
                offline_since = player.presence.last_changed
            if now - offline_since <= threshold:
                continue
            if self.skip(room, books, player_id):
                skipped.append(player_id)
        return skipped

    def skip(self, room, books, player_id) -> bool:
        owner_id = owner_of(room.round, room.player_order, player_id)
        previous = books.get(owner_id, {}).get(room.round - 1) if room.round > 0 else None
        page = Page(
            type=PAGE_SKIPPED,
            value=previous.value if previous is not None else PLACEHOLDER_VALUE,
            author=player_id,
        )
        accepted = self.ledger.submit(room.round, owner_id, page)
        if accepted:
            self.app.logger.info(
                f"[skip] room={self.room_code} round={room.round} player={player_id} owner={owner_id}"
            )
        return accepted
