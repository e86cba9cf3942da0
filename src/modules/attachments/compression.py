"""Lossless gzip compression for large attachments."""

import asyncio
import gzip
import logging
import time
from dataclasses import dataclass

from src.core.config import MIB

logger = logging.getLogger(__name__)

COMPRESSIBLE_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/csv",
        "text/plain",
    }
)
COMPRESSION_LEVEL = 6


@dataclass(frozen=True)
class CompressionResult:
    data: bytes
    original_size: int
    compressed: bool
    duration_ms: int

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def reduction_percent(self) -> float:
        if not self.original_size:
            return 0.0
        return round((self.original_size - self.size) / self.original_size * 100, 1)


def should_compress(size: int, mime_type: str, threshold: int, force: bool = False) -> bool:
    if mime_type not in COMPRESSIBLE_TYPES:
        return False
    return force or size > threshold


def compress_payload(data: bytes, mime_type: str, threshold: int, force: bool = False) -> CompressionResult:
    """Gzip the payload when it is over the threshold; keep the result only if it is smaller."""
    start = time.monotonic()
    if not should_compress(len(data), mime_type, threshold, force):
        return CompressionResult(data, len(data), False, 0)

    packed = gzip.compress(data, compresslevel=COMPRESSION_LEVEL, mtime=0)
    duration_ms = int((time.monotonic() - start) * 1000)
    if len(packed) >= len(data):
        return CompressionResult(data, len(data), False, duration_ms)

    result = CompressionResult(packed, len(data), True, duration_ms)
    logger.info(
        "Compressed %s payload: %.2fMB -> %.2fMB (%.1f%% smaller)",
        mime_type,
        len(data) / MIB,
        result.size / MIB,
        result.reduction_percent,
    )
    return result


async def compress_payload_async(
    data: bytes, mime_type: str, threshold: int, force: bool = False
) -> CompressionResult:
    return await asyncio.to_thread(compress_payload, data, mime_type, threshold, force)


def decompress_payload(data: bytes) -> bytes:
    return gzip.decompress(data)
