"""
Block window estimation and chunk planning.

Converts time windows into block counts using a network's average block time,
and splits block ranges into contiguous chunks that providers will accept.
"""

import math

DEFAULT_BLOCK_TIME = 12
MAX_CHUNK_HOURS = 48

# Look-back windows offered to operators, in hours
TIMEFRAME_OPTIONS: tuple[float, ...] = (0.25, 0.5, 1, 2, 6, 12, 24, 48, 72, 168, 720)


def hours_to_blocks(hours: float, block_time: float = DEFAULT_BLOCK_TIME) -> int:
    """
    Estimate how many blocks a network produces in the given number of hours.

    :param hours: Length of the window in hours
    :param block_time: Average block time in seconds
    :return: Number of blocks, rounded up, at least 1 for a positive window
    """
    if hours <= 0:
        return 0
    if block_time <= 0:
        raise ValueError(f"Block time must be positive, got {block_time}")
    return max(1, math.ceil(hours * 3600 / block_time))


def chunk_size_for(
    block_time: float,
    max_block_range: int | None = None,
    chunk_hours: float = MAX_CHUNK_HOURS
) -> int:
    """
    Largest block span a single log query may cover.

    :param block_time: Average block time in seconds
    :param max_block_range: Provider-imposed range limit, if any
    :param chunk_hours: Chunk ceiling expressed in hours
    :return: Chunk size in blocks
    """
    size = hours_to_blocks(chunk_hours, block_time)
    if max_block_range:
        size = min(size, max_block_range)
    return max(1, size)


def window_start(current_block: int, hours: float, block_time: float = DEFAULT_BLOCK_TIME) -> int:
    """First block of a window of ``hours`` ending at ``current_block`` (inclusive)."""
    return max(0, current_block - hours_to_blocks(hours, block_time) + 1)


def plan_chunks(from_block: int, to_block: int, chunk_size: int) -> list[tuple[int, int]]:
    """
    Split an inclusive block range into contiguous chunks, oldest first.

    Chunk N ends exactly one block before chunk N+1 starts, so the union of all
    chunks equals the input range with no gaps and no overlaps.

    :param from_block: First block (inclusive)
    :param to_block: Last block (inclusive)
    :param chunk_size: Maximum number of blocks per chunk
    :return: List of (from, to) pairs
    """
    if chunk_size <= 0:
        raise ValueError(f"Chunk size must be positive, got {chunk_size}")
    if to_block < from_block:
        return []

    chunks = []
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        chunks.append((start, end))
        start = end + 1
    return chunks


def split_range(from_block: int, to_block: int) -> list[tuple[int, int]]:
    """Halve an inclusive range; a single-block range cannot be split."""
    if to_block <= from_block:
        return [(from_block, to_block)]
    middle = (from_block + to_block) // 2
    return [(from_block, middle), (middle + 1, to_block)]
