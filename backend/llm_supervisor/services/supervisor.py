"""Lifecycle owner of the llama-server subprocess.

The supervisor spawns, observes, restarts and tears down exactly one server
process. All mutations of the process handle happen on the event loop and
start/stop/restart are serialized by a single lock. Readiness is single-flight:
concurrent callers of `ensure_ready()` share one bring-up task.
"""

from __future__ import annotations

import asyncio
import signal
import time
from collections.abc import Awaitable, Callable

import psutil
from loguru import logger

from llm_supervisor.config import Settings
from llm_supervisor.errors import StartupError, SupervisorClosedError
from llm_supervisor.models import HealthSnapshot, LoadingState, ModelConfig, get_model_config
from llm_supervisor.services.health_monitor import HealthMonitor
from llm_supervisor.services.idle_manager import IdleManager
from llm_supervisor.services.output_parser import OutputEvent, classify_line, is_memory_error
from llm_supervisor.services.path_resolver import PathResolver
from llm_supervisor.services.process_handle import ExitCallback, LineCallback, ProcessHandle
from llm_supervisor.services.resource_estimator import gpu_layers, model_load_timeout
from llm_supervisor.utils.command_builder import build_llama_server_command
from llm_supervisor.utils.notifications import Notifier, log_notifier, safe_notify
from llm_supervisor.utils.system_info import describe_memory_pressure

SpawnFn = Callable[..., Awaitable[ProcessHandle]]

LLAMA_PROVIDER = "llama"


def _describe_exit(returncode: int | None) -> str:
    if returncode is not None and returncode < 0:
        try:
            return f"killed by signal {signal.Signals(-returncode).name}"
        except ValueError:
            pass
    return f"exited with code {returncode}"


class ProcessSupervisor:
    """Owns the llama-server process and its loading state."""

    def __init__(
        self,
        settings: Settings,
        *,
        spawn: SpawnFn | None = None,
        notifier: Notifier | None = log_notifier,
    ) -> None:
        self.settings = settings
        self.model: ModelConfig = get_model_config(settings.model_key)
        self.paths = PathResolver(settings, self.model)
        self.notifier = notifier
        self._spawn: SpawnFn = spawn or ProcessHandle.spawn

        self._state = LoadingState.NOT_LOADED
        self._handle: ProcessHandle | None = None
        self._generation = 0
        self._lock = asyncio.Lock()
        self._closing = asyncio.Event()
        self._cleaning_up = False
        # Bumped by every cleanup(); work started under an older epoch must not resume
        self._epoch = 0
        self._ready_task: asyncio.Task[bool] | None = None
        self._last_error: str | None = None
        self._memory_error = False
        self._cleanup_hooks: list[Callable[[], None]] = []
        self.start_count = 0

        self.idle_manager = IdleManager(self, settings.effective_idle_timeout)
        self.health_monitor = HealthMonitor(self, settings.health_check_interval)

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def is_available(self) -> bool:
        """Whether the local llama provider is selected."""
        return self.settings.llm_provider == LLAMA_PROVIDER

    @property
    def keep_model_loaded(self) -> bool:
        return self.settings.keep_model_loaded

    @property
    def has_process(self) -> bool:
        return self._handle is not None

    @property
    def handle(self) -> ProcessHandle | None:
        return self._handle

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def is_cleaning_up(self) -> bool:
        return self._cleaning_up

    @property
    def epoch(self) -> int:
        """Cleanup generation; callers capture it before long-running work."""
        return self._epoch

    def _check_epoch(self, epoch: int | None) -> None:
        if epoch is not None and epoch != self._epoch:
            raise SupervisorClosedError("Supervisor was cleaned up while the operation was running")

    def get_loading_state(self) -> LoadingState:
        return self._state

    def is_process_alive(self) -> bool:
        return self._handle is not None and self._handle.is_alive()

    def get_process_health(self) -> HealthSnapshot:
        """Sample the server process through psutil."""
        handle = self._handle
        if handle is None or not handle.is_alive() or handle.pid is None:
            return HealthSnapshot(memory_usage_mb=None)

        memory_mb: float | None = None
        try:
            rss = psutil.Process(handle.pid).memory_info().rss
            memory_mb = round(rss / (1024 * 1024), 2)
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess) as e:
            logger.debug(f"Could not sample llama-server memory: {e}")

        return HealthSnapshot(
            memory_usage_mb=memory_mb,
            pid=handle.pid,
            is_running=True,
            uptime_seconds=handle.uptime_seconds(),
        )

    def add_cleanup_hook(self, hook: Callable[[], None]) -> None:
        """Register a callable run by cleanup(), e.g. cancelling downloads."""
        self._cleanup_hooks.append(hook)

    def update_settings(self, settings: Settings) -> None:
        """Apply new settings. A running server keeps its model until restarted."""
        model_changed = settings.model_key != self.settings.model_key
        self.settings = settings
        self.model = get_model_config(settings.model_key)
        self.paths = PathResolver(settings, self.model)
        self.idle_manager.update_timeout(settings.effective_idle_timeout)
        self.health_monitor.interval = settings.health_check_interval
        if model_changed and self._handle is not None:
            logger.info(f"Model changed to {self.model.name}; restart the server to apply")

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait(self, seconds: float, *, epoch: int | None = None) -> None:
        """Sleep that is interrupted by cleanup().

        Passing the epoch captured when the caller's work began also rejects
        waits that start after a cleanup has already finished.

        Raises:
            SupervisorClosedError: If cleanup starts before or during the wait
        """
        self._check_epoch(epoch)
        if self._cleaning_up:
            raise SupervisorClosedError("Supervisor is cleaning up")
        closing = self._closing
        try:
            await asyncio.wait_for(closing.wait(), timeout=max(seconds, 0.0))
        except TimeoutError:
            self._check_epoch(epoch)
            return
        raise SupervisorClosedError("Supervisor is cleaning up")

    async def wait_for_ready(
        self, timeout: float, *, raise_on_exit: bool = True, epoch: int | None = None
    ) -> bool:
        """Poll the loading state until ready, exit or timeout.

        Raises:
            StartupError: If the process exits while loading and raise_on_exit is set
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            if self._handle is not None and self._state is LoadingState.READY:
                return True
            if self._handle is None:
                if raise_on_exit:
                    raise StartupError(
                        self._last_error or "llama-server exited before the model was loaded",
                        memory_related=self._memory_error,
                    )
                return False
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await self.wait(min(self.settings.ready_poll_interval, remaining), epoch=epoch)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_server(self) -> None:
        """Spawn llama-server if it is not already running.

        Raises:
            ConfigurationError: Binary or model cannot be resolved
            StartupError: Spawn failed or the process exited during the grace window
            SupervisorClosedError: Cleanup is in progress
        """
        async with self._lock:
            await self._start_locked()

    async def _start_locked(self) -> None:
        if self._cleaning_up:
            raise SupervisorClosedError("Cannot start llama-server while cleanup is in progress")
        if self._handle is not None:
            logger.debug("llama-server already running, start ignored")
            return

        binary = self.paths.resolve_binary()
        model_path = self.paths.resolve_model()
        layers = gpu_layers(self.model.size_mb)
        command = build_llama_server_command(
            str(binary),
            str(model_path),
            port=self.settings.port,
            gpu_layers=layers,
            parallel=self.settings.concurrency,
            host=self.settings.host,
        )

        logger.info(
            f"Starting llama-server for {self.model.name} "
            f"({self.model.size_mb} MB, {layers} GPU layers) on port {self.settings.port}"
        )
        self._last_error = None
        self._memory_error = False
        self._state = LoadingState.LOADING
        self.start_count += 1
        safe_notify(self.notifier, f"Loading AI model ({self.model.name})...")

        on_line, on_exit = self._make_callbacks(self._generation)
        try:
            handle = await self._spawn(command, on_line=on_line, on_exit=on_exit)
        except OSError as e:
            self._state = LoadingState.NOT_LOADED
            self._last_error = f"Failed to start llama-server: {e}"
            safe_notify(self.notifier, "Failed to start llama-server - check the binary path")
            raise StartupError(self._last_error) from e
        except BaseException:
            self._state = LoadingState.NOT_LOADED
            raise

        self._handle = handle
        self.health_monitor.start()

        try:
            await self.wait(self.settings.startup_grace_seconds)
        except BaseException:
            await self._stop_locked()
            raise

        if self._handle is not handle:
            message = self._last_error or (
                f"llama-server {_describe_exit(handle.returncode)} during startup"
            )
            safe_notify(self.notifier, "Failed to start llama-server")
            raise StartupError(
                message,
                exit_code=handle.returncode,
                memory_related=self._memory_error,
            )
        logger.info(f"llama-server started (pid={handle.pid}), loading model")

    async def stop_server(self) -> None:
        """Stop the server; a no-op when nothing is running."""
        async with self._lock:
            await self._stop_locked()

    async def _stop_locked(self) -> None:
        handle = self._handle
        if handle is None:
            return
        logger.info(f"Stopping llama-server (pid={handle.pid})")
        handle.detach()
        self._clear_handle()
        await handle.stop(self.settings.stop_grace_seconds)

    async def restart_server(self, delay: float | None = None, *, epoch: int | None = None) -> None:
        """Stop, wait and start under a single lock acquisition.

        Raises:
            SupervisorClosedError: If a cleanup ran since `epoch` was captured
        """
        if delay is None:
            delay = self.settings.restart_delay_seconds
        async with self._lock:
            self._check_epoch(epoch)
            logger.info("Restarting llama-server")
            await self._stop_locked()
            await self.wait(delay, epoch=epoch)
            await self._start_locked()

    async def unload_idle(self) -> None:
        """Unload the model after the idle timeout fired."""
        async with self._lock:
            if self._handle is None or self.keep_model_loaded:
                return
            self._state = LoadingState.IDLE
            await self._stop_locked()
        safe_notify(self.notifier, "AI model unloaded after inactivity")

    def mark_process_gone(self) -> None:
        """Drop the handle of a process that is no longer running."""
        handle = self._handle
        if handle is None or handle.is_alive():
            return
        logger.warning(f"llama-server (pid={handle.pid}) is gone, clearing handle")
        handle.detach()
        self._clear_handle()

    async def ensure_ready(self, epoch: int | None = None) -> bool:
        """Make sure a loaded server is running.

        Returns False when the llama provider is not selected. Concurrent
        callers share one bring-up task.

        Raises:
            ConfigurationError: Binary or model cannot be resolved
            StartupError: The server failed to start or never became ready
            SupervisorClosedError: If a cleanup ran since `epoch` was captured
        """
        self._check_epoch(epoch)
        if not self.is_available:
            return False

        handle = self._handle
        if handle is not None and handle.is_alive():
            if self._state is LoadingState.READY:
                return True
            if self._state is LoadingState.IDLE:
                self._state = LoadingState.READY
                return True

        if self._ready_task is None or self._ready_task.done():
            self._ready_task = asyncio.create_task(self._bring_up())
        return await asyncio.shield(self._ready_task)

    async def _bring_up(self) -> bool:
        started = time.monotonic()
        load_timeout = model_load_timeout(self.model.size_mb)

        # A process can exit before its exit callback has been delivered
        self.mark_process_gone()
        if self._handle is None:
            await self.start_server()
        else:
            logger.debug("llama-server is running but not ready yet, waiting")

        if await self.wait_for_ready(load_timeout):
            return True

        logger.warning(f"llama-server not ready after {load_timeout:.0f}s, restarting")
        async with self._lock:
            await self._stop_locked()
            await self._start_locked()

        if await self.wait_for_ready(load_timeout):
            return True

        elapsed_minutes = (time.monotonic() - started) / 60
        await self.stop_server()
        raise StartupError(
            f"llama-server did not become ready within {elapsed_minutes:.1f} minutes"
        )

    async def cleanup(self) -> None:
        """Stop everything and reset; safe to call in any state."""
        logger.info("Cleaning up llama-server supervisor")
        self._epoch += 1
        self._cleaning_up = True
        self._closing.set()
        try:
            ready_task, self._ready_task = self._ready_task, None
            if ready_task is not None and not ready_task.done():
                # Waiters see SupervisorClosedError; cancel only if the task is stuck
                _, pending = await asyncio.wait(
                    {ready_task}, timeout=self.settings.stop_grace_seconds
                )
                if pending:
                    ready_task.cancel()
                await asyncio.gather(ready_task, return_exceptions=True)

            self.health_monitor.stop()
            self.health_monitor.cancel_restart()
            self.idle_manager.cancel()

            async with self._lock:
                await self._stop_locked()

            for hook in self._cleanup_hooks:
                try:
                    hook()
                except Exception as e:
                    logger.warning(f"Cleanup hook failed: {e}")
        finally:
            self._state = LoadingState.NOT_LOADED
            self._last_error = None
            self._memory_error = False
            self.start_count = 0
            self._closing = asyncio.Event()
            self._cleaning_up = False

    # ------------------------------------------------------------------
    # Process events
    # ------------------------------------------------------------------

    def _make_callbacks(self, generation: int) -> tuple[LineCallback, ExitCallback]:
        def on_line(stream: str, line: str) -> None:
            if self._cleaning_up or generation != self._generation:
                return
            self._handle_line(stream, line)

        def on_exit(returncode: int | None) -> None:
            if self._cleaning_up or generation != self._generation:
                return
            self._handle_exit(returncode)

        return on_line, on_exit

    def _handle_line(self, stream: str, line: str) -> None:
        event = classify_line(line)
        if event is OutputEvent.MODEL_LOADED:
            if self._state in (LoadingState.LOADING, LoadingState.NOT_LOADED):
                self._state = LoadingState.READY
                logger.info(f"Model {self.model.name} loaded, llama-server ready")
                safe_notify(self.notifier, "AI model ready")
        elif event is OutputEvent.LISTENING:
            logger.debug("llama-server HTTP endpoint is up, model still loading")
            if self._state is LoadingState.NOT_LOADED:
                self._state = LoadingState.LOADING
        elif event is OutputEvent.ERROR and stream == "stderr":
            self._record_error(line)

    def _record_error(self, line: str) -> None:
        text = line.strip()
        logger.error(f"llama-server: {text}")
        if is_memory_error(text):
            if not self._memory_error:
                self._memory_error = True
                self._last_error = (
                    f"llama-server ran out of memory: {text}. "
                    f"{describe_memory_pressure(self.model)}"
                )
                safe_notify(self.notifier, self._last_error)
        elif not self._memory_error:
            self._last_error = f"llama-server error: {text}"

    def _handle_exit(self, returncode: int | None) -> None:
        handle = self._handle
        if handle is None:
            return
        exit_text = _describe_exit(returncode)
        if self._last_error is None and returncode != 0:
            self._last_error = f"llama-server {exit_text}"

        tail = "\n".join(handle.output.tail())
        logger.warning(f"llama-server (pid={handle.pid}) {exit_text}")
        if tail:
            logger.debug(f"Last llama-server output:\n{tail}")
        self._clear_handle()

    def _clear_handle(self) -> None:
        self._generation += 1
        self._handle = None
        self._state = LoadingState.NOT_LOADED
        self.idle_manager.cancel()
        self.health_monitor.stop()
