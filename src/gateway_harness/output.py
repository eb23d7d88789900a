"""Incremental capture of a child process's stdout and stderr.

The collector reads each pipe in a background task and appends decoded
chunks to an ordered buffer, so a snapshot of everything written so far
is available at any moment, including while the child is still running.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import logging

from gateway_harness.models import DiagnosticSnapshot

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 4096
_DEFAULT_DRAIN_SECONDS = 5.0


class _StreamBuffer:
    """Ordered, append-only text chunks for one stream."""

    def __init__(self, name: str) -> None:
        self.name = name
        self.chunks: list[str] = []
        # Decode as UTF-8 with replacement for non-UTF-8 bytes; the
        # incremental decoder keeps split multi-byte sequences intact.
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.frozen = False

    def feed(self, data: bytes) -> None:
        if self.frozen:
            return
        text = self._decoder.decode(data)
        if text:
            self.chunks.append(text)

    def finish(self) -> None:
        if self.frozen:
            return
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self.chunks.append(tail)
        self.frozen = True

    def text(self) -> str:
        return "".join(self.chunks)


class OutputCollector:
    """Capture stdout and stderr of a child process as they arrive."""

    def __init__(self) -> None:
        self._stdout = _StreamBuffer("stdout")
        self._stderr = _StreamBuffer("stderr")
        self._tasks: list[asyncio.Task[None]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        """Whether the buffers are frozen."""
        return self._closed

    def attach(
        self,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
    ) -> None:
        """Start reading both streams in background tasks.

        A ``None`` stream is treated as one that never produces output.
        """
        for reader, buffer in ((stdout, self._stdout), (stderr, self._stderr)):
            if reader is None:
                continue
            task = asyncio.create_task(
                self._pump(reader, buffer), name=f"collect-{buffer.name}"
            )
            self._tasks.append(task)

    async def _pump(self, reader: asyncio.StreamReader, buffer: _StreamBuffer) -> None:
        while True:
            try:
                data = await reader.read(_READ_CHUNK_BYTES)
            except (ConnectionResetError, BrokenPipeError):
                break
            if not data:
                break
            buffer.feed(data)
        logger.debug("%s reached EOF", buffer.name)

    def snapshot(self) -> DiagnosticSnapshot:
        """Return everything captured so far, concatenated in arrival order."""
        return DiagnosticSnapshot(stdout=self._stdout.text(), stderr=self._stderr.text())

    async def aclose(self, timeout: float = _DEFAULT_DRAIN_SECONDS) -> DiagnosticSnapshot:
        """Drain both streams to EOF and freeze the buffers.

        Readers still blocked after *timeout* seconds (e.g. a grandchild
        kept the pipe open) are cancelled. Idempotent.

        Returns:
            The final snapshot.
        """
        if not self._closed:
            pending = [t for t in self._tasks if not t.done()]
            if pending:
                _, still_pending = await asyncio.wait(pending, timeout=timeout)
                for task in still_pending:
                    task.cancel()
                for task in still_pending:
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
            self._stdout.finish()
            self._stderr.finish()
            self._closed = True
        return self.snapshot()
