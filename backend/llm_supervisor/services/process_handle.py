"""Owned llama-server subprocess with its stream listeners."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Callable, Sequence

from loguru import logger

from llm_supervisor.services.output_parser import OutputRingBuffer

LineCallback = Callable[[str, str], None]  # (stream, line)
ExitCallback = Callable[[int | None], None]  # returncode

# asyncio's default 64 KiB line limit is too small for some llama.cpp dumps
STREAM_LIMIT = 1024 * 1024

server_output = logger.bind(subprocess=True)


class ProcessHandle:
    """A running subprocess plus its registered callbacks.

    Output is pumped line by line into an OutputRingBuffer and forwarded to
    `on_line`; `on_exit` fires once after the process exits and both streams
    are drained. `detach()` drops both callbacks so that nothing reaches the
    owner after teardown, even if the process keeps writing.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        on_line: LineCallback | None = None,
        on_exit: ExitCallback | None = None,
        max_buffer_lines: int = 1000,
    ) -> None:
        self._process = process
        self._on_line = on_line
        self._on_exit = on_exit
        self.output = OutputRingBuffer(max_buffer_lines)
        self.started_at = time.time()
        self._pumps: list[asyncio.Task[None]] = []
        self._watcher: asyncio.Task[None] | None = None

    @classmethod
    async def spawn(
        cls,
        command: Sequence[str],
        *,
        on_line: LineCallback | None = None,
        on_exit: ExitCallback | None = None,
        max_buffer_lines: int = 1000,
    ) -> ProcessHandle:
        """Start the command with piped output and begin pumping its streams.

        Raises:
            OSError: If the executable cannot be started
        """
        logger.info(f"Starting process: {' '.join(command)}")
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        handle = cls(
            process,
            on_line=on_line,
            on_exit=on_exit,
            max_buffer_lines=max_buffer_lines,
        )
        handle._start_listeners()
        logger.info(f"Process spawned with pid={process.pid}")
        return handle

    @property
    def pid(self) -> int | None:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def has_listeners(self) -> bool:
        return self._on_line is not None or self._on_exit is not None

    def is_alive(self) -> bool:
        return self._process.returncode is None

    def uptime_seconds(self) -> float:
        return time.time() - self.started_at

    def _start_listeners(self) -> None:
        if self._process.stdout is not None:
            self._pumps.append(asyncio.create_task(self._pump("stdout", self._process.stdout)))
        if self._process.stderr is not None:
            self._pumps.append(asyncio.create_task(self._pump("stderr", self._process.stderr)))
        self._watcher = asyncio.create_task(self._watch_exit())

    async def _pump(self, stream: str, reader: asyncio.StreamReader) -> None:
        while True:
            raw = await reader.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line.strip():
                continue
            self.output.append(stream, line)
            server_output.bind(stream=stream).debug(line)
            callback = self._on_line
            if callback is not None:
                callback(stream, line)

    async def _watch_exit(self) -> None:
        returncode = await self._process.wait()
        # Deliver remaining output before announcing the exit
        await asyncio.gather(*self._pumps, return_exceptions=True)
        logger.debug(f"Process {self.pid} exited with code {returncode}")
        callback = self._on_exit
        if callback is not None:
            callback(returncode)

    def detach(self) -> None:
        """Deregister the line and exit callbacks."""
        self._on_line = None
        self._on_exit = None

    async def stop(self, grace_seconds: float = 2.0) -> None:
        """SIGTERM, then SIGKILL if the process outlives the grace window.

        Signalling errors are logged, never raised.
        """
        try:
            if self.is_alive():
                logger.debug(f"Stopping process {self.pid} with SIGTERM")
                self._send(signal.SIGTERM)
                try:
                    await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
                except TimeoutError:
                    logger.warning(
                        f"Process {self.pid} did not exit in {grace_seconds}s, force killing"
                    )
                    self._send(signal.SIGKILL)
                    with contextlib.suppress(TimeoutError):
                        await asyncio.wait_for(self._process.wait(), timeout=grace_seconds)
        finally:
            await self._cancel_listeners()

    def _send(self, sig: signal.Signals) -> None:
        try:
            if sig == signal.SIGKILL:
                self._process.kill()
            else:
                self._process.send_signal(sig)
        except ProcessLookupError:
            logger.debug(f"Process {self.pid} already gone")
        except OSError as e:
            logger.warning(f"Failed to send {sig.name} to {self.pid}: {e}")

    async def _cancel_listeners(self) -> None:
        tasks = [t for t in (*self._pumps, self._watcher) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
