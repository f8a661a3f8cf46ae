"""
Chunk planning.

Splits a file into an ordered sequence of fixed-size chunk descriptors.
Planning is a pure function of (file size, chunk size, threshold): replanning
the same file always yields an identical plan, so resuming after a restart
only needs the persisted receipts, never the plan itself.
"""
from __future__ import annotations

from typing import List

from .models import ChunkDescriptor, ChunkPlan

__all__ = ["plan_chunks", "should_chunk"]


def should_chunk(file_size: int, *, chunk_size: int, min_file_size_for_chunking: int) -> bool:
    """
    Decide whether a file is uploaded in chunks.

    A file is chunked only when it reaches the configured threshold and would
    produce more than one chunk; everything else is sent as a single request.
    """
    return file_size >= min_file_size_for_chunking and file_size > chunk_size


def plan_chunks(file_size: int, *, chunk_size: int, min_file_size_for_chunking: int) -> ChunkPlan:
    """
    Compute the chunk plan for a file.

    Args:
        file_size: Total size in bytes
        chunk_size: Bytes per chunk (the last chunk may be shorter)
        min_file_size_for_chunking: Files smaller than this are sent whole

    Returns:
        ChunkPlan with contiguous 0-based descriptors

    Raises:
        ValueError: If sizes are negative or chunk_size is not positive
    """
    if file_size < 0:
        raise ValueError(f"file_size must be non-negative, got {file_size}")
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if min_file_size_for_chunking < 0:
        raise ValueError(f"min_file_size_for_chunking must be non-negative, got {min_file_size_for_chunking}")

    if not should_chunk(file_size, chunk_size=chunk_size, min_file_size_for_chunking=min_file_size_for_chunking):
        whole = ChunkDescriptor(index=0, start=0, end=file_size)
        return ChunkPlan(file_size=file_size, chunk_size=chunk_size, chunked=False, descriptors=(whole,))

    descriptors: List[ChunkDescriptor] = []
    for index, start in enumerate(range(0, file_size, chunk_size)):
        end = min(start + chunk_size, file_size)
        descriptors.append(ChunkDescriptor(index=index, start=start, end=end))

    return ChunkPlan(file_size=file_size, chunk_size=chunk_size, chunked=True, descriptors=tuple(descriptors))
