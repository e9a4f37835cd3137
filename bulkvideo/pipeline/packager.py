"""
Bulk Packager — stream a ZIP of finished videos straight to the caller.

A producer task writes the archive with zipfile into a non-seekable sink and
drains it, chunk by chunk, into a bounded asyncio.Queue; the HTTP response
consumes the queue. Only a few chunks are ever held in memory. Each artifact
is spooled first (memory up to SPOOL_MAX_BYTES, then disk) so a failed fetch
can be skipped cleanly instead of leaving a truncated entry.
"""

import re
import asyncio
import logging
import zipfile
from dataclasses import dataclass
from tempfile import SpooledTemporaryFile
from typing import AsyncIterator, Iterable

from .. import metrics
from ..errors import ArtifactUnavailableError
from .storage import AssetStoreGateway

logger = logging.getLogger(__name__)

CHUNK_SIZE = 256 * 1024
PIPE_DEPTH = 8  # chunks buffered between producer and consumer
SPOOL_MAX_BYTES = 16 * 1024 * 1024

_EOF = object()


@dataclass(frozen=True)
class PackageEntry:
    name: str
    artifact_ref: str


def slugify(value: str) -> str:
    slug = re.sub(r"[^A-Za-z0-9]+", "-", value or "").strip("-").lower()
    return slug or "batch"


def entry_name(batch_name: str, row_index: int, fmt: str) -> str:
    """'Summer Sale', 7, '1080x1920' → 'summer-sale/video-007-1080x1920.mp4'"""
    return f"{slugify(batch_name)}/video-{row_index:03d}-{fmt}.mp4"


def unique_entry_names(names: Iterable[str]) -> list[str]:
    """Suffix -2, -3… onto repeated names so no entry overwrites another."""
    seen: dict[str, int] = {}
    result = []
    for name in names:
        count = seen.get(name, 0) + 1
        seen[name] = count
        if count > 1:
            stem, dot, ext = name.rpartition(".")
            name = f"{stem}-{count}.{ext}" if dot else f"{name}-{count}"
        result.append(name)
    return result


class _PipeSink:
    """Write-only file object handed to ZipFile; buffers until drained."""

    def __init__(self):
        self._buffer = bytearray()
        self._position = 0

    def write(self, data) -> int:
        self._buffer += data
        self._position += len(data)
        return len(data)

    def tell(self) -> int:
        return self._position

    def flush(self):
        pass

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


async def _drain(sink: _PipeSink, pipe: asyncio.Queue):
    data = sink.take()
    if data:
        await pipe.put(data)


async def _write_archive(entries: list[PackageEntry], gateway: AssetStoreGateway, pipe: asyncio.Queue):
    sink = _PipeSink()
    written = skipped = 0

    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, compresslevel=6) as archive:
        for entry in entries:
            with SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as spool:
                try:
                    await gateway.download_to(entry.artifact_ref, spool)
                except (ArtifactUnavailableError, ValueError, OSError) as e:
                    skipped += 1
                    logger.warning(f"Skipping {entry.name}: {e}")
                    metrics.record_error("package", type(e).__name__, str(e))
                    continue

                spool.seek(0)
                with archive.open(entry.name, mode="w") as dest:
                    while chunk := spool.read(CHUNK_SIZE):
                        dest.write(chunk)
                        await _drain(sink, pipe)
                written += 1
            await _drain(sink, pipe)

    # central directory is written on close
    await _drain(sink, pipe)
    logger.info(f"ZIP finalized: {written} entries, {skipped} skipped")


async def stream_zip(
    entries: list[PackageEntry],
    gateway: AssetStoreGateway,
    pipe_depth: int = PIPE_DEPTH,
) -> AsyncIterator[bytes]:
    """
    Yield a ZIP archive of `entries` as it is being built.

    Missing or unreadable artifacts are logged and left out; the archive is
    always finalized with whatever could be fetched.
    """
    pipe: asyncio.Queue = asyncio.Queue(maxsize=pipe_depth)

    async def produce():
        try:
            await _write_archive(entries, gateway, pipe)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("ZIP producer failed", exc_info=True)
            await pipe.put(_EOF)
            raise
        await pipe.put(_EOF)

    producer = asyncio.create_task(produce())
    try:
        while True:
            chunk = await pipe.get()
            if chunk is _EOF:
                break
            yield chunk
        await producer
    finally:
        if not producer.done():
            producer.cancel()


def build_download_links(entries: list[PackageEntry], gateway: AssetStoreGateway) -> list[dict]:
    """The non-streaming option: one signed download URL per entry."""
    links = []
    for entry in entries:
        filename = entry.name.rsplit("/", 1)[-1]
        links.append({
            "name": entry.name,
            "url": gateway.presign(entry.artifact_ref, download_filename=filename),
        })
    return links
