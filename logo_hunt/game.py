from typing import Iterable, List, Optional


# masks are stored in a signed 64-bit column
MAX_GRID_SIZE = 7


def total_pieces(grid_size: int) -> int:
    if not 0 < grid_size <= MAX_GRID_SIZE:
        raise ValueError(f"grid size must be between 1 and {MAX_GRID_SIZE}, got {grid_size}")
    return grid_size * grid_size


# Revealed pieces are a bitset: bit i set <=> piece i revealed.

def pieces_from_mask(mask: int) -> List[int]:
    pieces = []
    i = 0
    while mask:
        if mask & 1:
            pieces.append(i)
        mask >>= 1
        i += 1
    return pieces


def mask_from_pieces(pieces: Iterable[int]) -> int:
    mask = 0
    for p in pieces:
        if p < 0:
            raise ValueError(f"piece index must be non-negative, got {p}")
        mask |= 1 << p
    return mask


def has_piece(mask: int, index: int) -> bool:
    return index >= 0 and bool(mask >> index & 1)


def add_piece(mask: int, index: int) -> int:
    return mask | (1 << index)


def count_pieces(mask: int) -> int:
    return bin(mask).count("1")


def choose_piece(mask: int, requested: int, total: int) -> Optional[int]:
    """Pick the piece a reveal request actually uncovers.

    The requested index is used when it is in range and still hidden. Otherwise the
    lowest hidden index wins. Returns None when nothing is left to reveal.
    """
    if 0 <= requested < total and not has_piece(mask, requested):
        return requested
    for i in range(total):
        if not has_piece(mask, i):
            return i
    return None


def format_duration(ms: int) -> str:
    seconds = max(0, int(ms)) // 1000
    minutes = seconds // 60
    hours = minutes // 60
    if hours > 0:
        return f"{hours}h {minutes % 60}m {seconds % 60}s"
    if minutes > 0:
        return f"{minutes}m {seconds % 60}s"
    return f"{seconds}s"
