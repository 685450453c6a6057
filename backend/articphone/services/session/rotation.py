"""Ring rotation: which notebook each player holds in a given round."""

START_WRITE = 'WRITE'
START_DRAW = 'DRAW'

PAGE_PROMPT = 'PROMPT'
PAGE_DRAWING = 'DRAWING'
PAGE_SKIPPED = 'SKIPPED'


def owner_index(round_: int, my_index: int, n: int) -> int:
    return (my_index + round_) % n


def owner_of(round_: int, player_order: list, player_id: str) -> str:
    """Id of the notebook owner ``player_id`` writes into during ``round_``."""
    n = len(player_order)
    return player_order[owner_index(round_, player_order.index(player_id), n)]


def is_draw_round(round_: int, start_mode: str) -> bool:
    return (start_mode == START_DRAW) == (round_ % 2 == 0)


def page_type_for(round_: int, start_mode: str) -> str:
    return PAGE_DRAWING if is_draw_round(round_, start_mode) else PAGE_PROMPT
