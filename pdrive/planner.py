"""
Chunk planning.

Splits a file size into fixed-size parts for a multipart upload. Pure
functions: the same inputs always give the same plan.
"""

import logging

from pdrive.exceptions import InvalidSizeError, PartCountExceededError
from pdrive.models import S3_MAX_PART_COUNT, S3_MIN_PART_SIZE, ChunkPlan, ChunkSpec

logger = logging.getLogger(__name__)


def plan(file_size: int, min_part_size: int, max_part_count: int = S3_MAX_PART_COUNT) -> ChunkPlan:
    """
    Plan the parts of a file.

    A file no larger than min_part_size is a single part (uploaded with a
    single put). Larger files are split into parts of min_part_size; the
    final part takes the remainder and may be smaller.

    Args:
        file_size: Size of the file in bytes
        min_part_size: Size of every non-final part
        max_part_count: Maximum number of parts the remote accepts

    Returns:
        ChunkPlan covering the file exactly once

    Raises:
        InvalidSizeError: If the file is empty or the part size is not positive
        PartCountExceededError: If more than max_part_count parts are needed
    """
    if file_size <= 0:
        raise InvalidSizeError(f"Cannot upload an empty file (size {file_size})")
    if min_part_size <= 0:
        raise InvalidSizeError(f"Part size must be positive, got {min_part_size}")

    if file_size <= min_part_size:
        return ChunkPlan(
            file_size=file_size,
            part_size=min_part_size,
            parts=[ChunkSpec(index=0, offset=0, length=file_size)],
        )

    part_count = -(-file_size // min_part_size)
    if part_count > max_part_count:
        raise PartCountExceededError(
            f"{file_size} bytes in parts of {min_part_size} needs {part_count} parts "
            f"(limit {max_part_count})",
            part_count=part_count,
            max_part_count=max_part_count,
        )

    parts = []
    offset = 0
    for index in range(part_count):
        length = min(min_part_size, file_size - offset)
        parts.append(ChunkSpec(index=index, offset=offset, length=length))
        offset += length

    return ChunkPlan(file_size=file_size, part_size=min_part_size, parts=parts)


def choose_part_size(
    file_size: int,
    part_size: int,
    min_part_size: int = S3_MIN_PART_SIZE,
    max_part_count: int = S3_MAX_PART_COUNT,
) -> ChunkPlan:
    """
    Plan with the configured part size, doubling it until the part count fits.

    The configured size is raised to min_part_size first, since every
    non-final part must meet the remote minimum.
    """
    size = max(part_size, min_part_size)
    while True:
        try:
            return plan(file_size, size, max_part_count)
        except PartCountExceededError as e:
            logger.debug("Part size %d gives %d parts, doubling", size, e.part_count)
            size *= 2
