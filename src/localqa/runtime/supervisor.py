"""
Runtime supervisor - owns the lifecycle of the inference daemon process.

State machine:
    ABSENT -> INSTALLING -> STARTING -> HEALTHY <-> DEGRADED -> TERMINATED

The supervisor holds at most one child process. Starting while HEALTHY is a
no-op that returns the existing handle. A periodic health check moves a
failing runtime to DEGRADED and makes exactly one restart attempt per
degradation episode; shutdown always terminates and reaps the child.
"""

import asyncio
import atexit
import logging
import os
import signal
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.config import RuntimeConfig
from ..core.exceptions import InstallationError, LocalQAError, ProviderError, RuntimeUnhealthy
from ..core.logging import log_with_context
from ..core.types import (
    GenerationChunk,
    GenerationOptions,
    ModelInfo,
    RuntimeState,
    RuntimeStatus,
)
from ..providers.ollama_client import OllamaClient
from .installer import RuntimeInstaller
from .stream import (
    ErrorEvent,
    PartialOutput,
    ProgressEvent,
    StatusEvent,
    UnknownEvent,
    decode_stream,
    progress_from_status,
)


logger = logging.getLogger(__name__)

Launcher = Callable[[str, Dict[str, str]], Awaitable[asyncio.subprocess.Process]]


async def launch_daemon(executable: str, env: Dict[str, str]) -> asyncio.subprocess.Process:
    """Start `<executable> serve` bound to the configured loopback endpoint."""
    return await asyncio.create_subprocess_exec(
        executable,
        "serve",
        env=env,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.DEVNULL,
    )


def _kill_orphan(pid: int) -> None:
    """Interpreter-exit guard: kill a child the supervisor never shut down."""
    try:
        os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
    except (ProcessLookupError, PermissionError, OSError):
        pass


@dataclass
class ModelListing:
    """Models the daemon reported; cached=True when served from the last good list."""
    models: List[ModelInfo] = field(default_factory=list)
    cached: bool = False

    @property
    def names(self) -> List[str]:
        return [m.name for m in self.models]


class RuntimeSupervisor:
    """
    Supervises the local inference daemon.

    Example:
        >>> supervisor = RuntimeSupervisor(RuntimeConfig())
        >>> status = await supervisor.ensure_runtime_ready()
        >>> async for chunk in supervisor.generate("Hello"):
        ...     print(chunk.partial_text, end="")
        >>> await supervisor.shutdown()
    """

    def __init__(
        self,
        config: Optional[RuntimeConfig] = None,
        client: Optional[OllamaClient] = None,
        installer: Optional[RuntimeInstaller] = None,
        launcher: Optional[Launcher] = None,
        auto_install: bool = True,
    ):
        """
        Initialize the supervisor.

        Args:
            config: Runtime configuration
            client: Daemon HTTP client (created from config if omitted)
            installer: Installer used when no executable is found
            launcher: Coroutine that spawns the daemon process
            auto_install: Install the runtime when it is not detected
        """
        self.config = config or RuntimeConfig()
        self.config.validate()
        self._owns_client = client is None
        self.client = client or OllamaClient(self.config)
        self.installer = installer or RuntimeInstaller(self.config)
        self._launcher = launcher or launch_daemon
        self.auto_install = auto_install

        self.model = self.config.model
        self._state = RuntimeState.ABSENT
        self._process: Optional[asyncio.subprocess.Process] = None
        self._executable: Optional[str] = None
        self._lock = asyncio.Lock()
        self._monitor_task: Optional[asyncio.Task] = None
        self._restart_attempted = False
        self._model_cache: Optional[List[ModelInfo]] = None
        self._version: Optional[str] = None

        self.restart_count = 0
        self.transitions: List[Tuple[RuntimeState, RuntimeState]] = []

    @property
    def state(self) -> RuntimeState:
        return self._state

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    def _transition(self, new_state: RuntimeState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        self.transitions.append((old_state, new_state))
        log_with_context(
            logger,
            logging.WARNING if new_state == RuntimeState.DEGRADED else logging.INFO,
            f"Runtime state: {old_state.value} -> {new_state.value}",
            runtime_state=new_state.value,
            model=self.model,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> Optional[asyncio.subprocess.Process]:
        """
        Bring the runtime to HEALTHY.

        Installs the daemon if missing, launches it and polls the liveness
        check. A daemon already answering on the endpoint is adopted without
        spawning a second one.

        Returns:
            The owned process handle, or None when an external daemon was adopted

        Raises:
            InstallationError: If installation was needed and failed
            RuntimeUnhealthy: If the daemon never became healthy
        """
        async with self._lock:
            if self._state == RuntimeState.TERMINATED:
                raise RuntimeUnhealthy("Runtime supervisor has been shut down", remedy="restart the application")
            if self._state == RuntimeState.HEALTHY:
                logger.debug("Runtime already healthy; start is a no-op")
                return self._process
            await self._start_locked()
            return self._process

    async def _start_locked(self) -> None:
        if await self.client.health_check(timeout=self.config.health_timeout_seconds):
            logger.info(f"Adopting runtime already listening at {self.config.base_url}")
            self._executable = self._executable or self.installer.detect()
            self._transition(RuntimeState.HEALTHY)
            return

        executable = self._executable or self.installer.detect()
        if executable is None:
            if not self.auto_install:
                raise InstallationError(
                    f"Runtime executable '{self.config.executable}' not found and auto-install is disabled"
                )
            self._transition(RuntimeState.INSTALLING)
            try:
                executable = await asyncio.to_thread(self.installer.install)
            except InstallationError:
                logger.error("Runtime installation failed")
                self._transition(RuntimeState.ABSENT)
                raise
        self._executable = executable

        await self._launch_and_wait(executable)

    async def _launch_and_wait(self, executable: str) -> None:
        self._transition(RuntimeState.STARTING)

        env = dict(os.environ)
        env["OLLAMA_HOST"] = f"{self.config.host}:{self.config.port}"
        logger.info(f"Starting runtime: {executable} serve ({self.config.base_url})")
        try:
            process = await self._launcher(executable, env)
        except OSError as e:
            self._transition(RuntimeState.DEGRADED)
            raise RuntimeUnhealthy(f"Failed to launch runtime '{executable}': {e}")

        self._process = process
        atexit.register(_kill_orphan, process.pid)

        for attempt in range(1, self.config.startup_poll_attempts + 1):
            if process.returncode is not None:
                logger.error(f"Runtime exited during startup with code {process.returncode}")
                break
            if await self.client.health_check(timeout=self.config.health_timeout_seconds):
                logger.info(f"Runtime healthy after {attempt} health check(s)")
                self._transition(RuntimeState.HEALTHY)
                return
            logger.debug(f"Runtime not ready (check {attempt}/{self.config.startup_poll_attempts})")
            if attempt < self.config.startup_poll_attempts:
                await asyncio.sleep(self.config.startup_poll_interval_seconds)

        await self._terminate_process()
        self._transition(RuntimeState.DEGRADED)
        raise RuntimeUnhealthy(
            f"Runtime did not become healthy after {self.config.startup_poll_attempts} health checks"
        )

    async def check_health(self) -> RuntimeState:
        """
        Run one health check and apply the HEALTHY <-> DEGRADED transitions.

        On the first failure of an episode the runtime moves to DEGRADED and
        one restart is attempted. Further failures in the same episode do not
        restart again; recovery to HEALTHY ends the episode.

        Returns:
            The state after the check
        """
        async with self._lock:
            if self._state not in (RuntimeState.HEALTHY, RuntimeState.DEGRADED):
                return self._state

            process_alive = self._process is None or self._process.returncode is None
            healthy = process_alive and await self.client.health_check(
                timeout=self.config.health_timeout_seconds
            )

            if healthy:
                if self._state == RuntimeState.DEGRADED:
                    logger.info("Runtime recovered")
                    self._transition(RuntimeState.HEALTHY)
                self._restart_attempted = False
                return self._state

            if self._state == RuntimeState.HEALTHY:
                reason = "process exited" if not process_alive else "liveness check failed"
                logger.warning(f"Runtime health check failed: {reason}")
                self._transition(RuntimeState.DEGRADED)

            if self._restart_attempted:
                logger.warning("Runtime still degraded; automatic restart already attempted")
                return self._state

            self._restart_attempted = True
            await self._restart_locked()
            return self._state

    async def _restart_locked(self) -> None:
        self.restart_count += 1
        logger.warning(f"Attempting automatic runtime restart (attempt {self.restart_count})")
        await self._terminate_process()

        executable = self._executable or self.installer.detect()
        if executable is None:
            logger.error("Cannot restart runtime: executable not found")
            self._transition(RuntimeState.DEGRADED)
            return
        try:
            await self._launch_and_wait(executable)
            self._restart_attempted = False
        except RuntimeUnhealthy as e:
            logger.error(f"Automatic restart failed: {e}")

    def start_monitoring(self) -> asyncio.Task:
        """Start the periodic health check task (idempotent)."""
        if self._monitor_task is None or self._monitor_task.done():
            self._monitor_task = asyncio.create_task(self._monitor_loop())
        return self._monitor_task

    async def _monitor_loop(self) -> None:
        interval = self.config.health_check_interval_seconds
        logger.debug(f"Health monitor running every {interval}s")
        while self._state != RuntimeState.TERMINATED:
            await asyncio.sleep(interval)
            try:
                await self.check_health()
            except LocalQAError as e:
                logger.error(f"Health check error: {e}")

    async def stop_monitoring(self) -> None:
        task, self._monitor_task = self._monitor_task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _terminate_process(self) -> None:
        process, self._process = self._process, None
        if process is None:
            return
        atexit.unregister(_kill_orphan)
        if process.returncode is not None:
            return

        logger.info(f"Terminating runtime process {process.pid}")
        try:
            process.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=self.config.termination_grace_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Runtime process {process.pid} ignored SIGTERM; killing")
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def shutdown(self) -> None:
        """Stop monitoring, terminate and reap the child, and close the client."""
        await self.stop_monitoring()
        async with self._lock:
            await self._terminate_process()
            self._transition(RuntimeState.TERMINATED)
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self) -> "RuntimeSupervisor":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Status and models
    # ------------------------------------------------------------------

    async def ensure_runtime_ready(self) -> RuntimeStatus:
        """
        Start the runtime if needed and report its status.

        Failures are reported through the status (healthy=False) and logged,
        with the last known model list when the daemon cannot be asked.
        """
        if self._state != RuntimeState.HEALTHY:
            try:
                await self.start()
            except (InstallationError, RuntimeUnhealthy) as e:
                logger.error(f"Runtime not ready: {e}")

        listing = await self.list_models()
        if self._state == RuntimeState.HEALTHY and self._version is None:
            try:
                await self.get_version()
            except ProviderError as e:
                logger.warning(f"Could not read runtime version: {e}")

        return self._build_status(listing)

    def status(self) -> RuntimeStatus:
        """Current status snapshot, without probing or starting anything."""
        cached = ModelListing(models=list(self._model_cache or []), cached=self._model_cache is not None)
        return self._build_status(cached)

    def _build_status(self, listing: ModelListing) -> RuntimeStatus:
        installed = self._executable is not None or self.installer.detect() is not None
        running = self._state in (RuntimeState.HEALTHY, RuntimeState.DEGRADED) and (
            self._process is None or self._process.returncode is None
        )
        return RuntimeStatus(
            installed=installed,
            running=running,
            healthy=self._state == RuntimeState.HEALTHY,
            state=self._state,
            version=self._version,
            available_models=listing.names,
            models_cached=listing.cached,
        )

    async def list_models(self) -> ModelListing:
        """
        List models, falling back to the last successful listing.

        Returns:
            ModelListing with cached=True when the daemon could not be asked
        """
        try:
            models = await self.client.list_models()
        except ProviderError as e:
            if self._model_cache is not None:
                logger.warning(f"Using cached model list ({len(self._model_cache)} models): {e}")
                return ModelListing(models=list(self._model_cache), cached=True)
            logger.warning(f"Could not list models and no cached list is available: {e}")
            return ModelListing(models=[], cached=False)
        self._model_cache = list(models)
        return ModelListing(models=models, cached=False)

    async def get_version(self) -> str:
        """Read and remember the daemon version."""
        self._version = await self.client.get_version()
        return self._version

    def set_model(self, model: str) -> None:
        """Switch the generation model for subsequent calls."""
        if not model or not model.strip():
            raise ValueError("model must be a non-empty string")
        logger.info(f"Generation model: {self.model} -> {model}")
        self.model = model

    async def ensure_model_available(self, model: Optional[str] = None) -> bool:
        """
        Pull a model unless the daemon already has it.

        Returns:
            True if a pull was performed
        """
        name = model or self.model
        listing = await self.list_models()
        if _has_model(listing.names, name):
            return False
        logger.info(f"Model {name} not available locally; pulling")
        async for progress in self.pull_model(name):
            if progress.fraction is not None:
                logger.debug(f"Pull {name}: {progress.status} {progress.fraction:.0%}")
        return True

    async def pull_model(self, model: str) -> AsyncIterator[ProgressEvent]:
        """
        Pull a model, yielding progress as the daemon reports it.

        Malformed lines are skipped, but more than max_stream_parse_errors in
        a row abort the pull.

        Raises:
            ProviderError: If the daemon reports an error or the stream is corrupted
        """
        self._require_running()
        payload = {"model": model, "stream": True}
        consecutive_errors = 0
        async with aclosing(decode_stream(self.client.stream_lines("/api/pull", payload))) as events:
            async for event in events:
                if isinstance(event, UnknownEvent):
                    if event.malformed:
                        consecutive_errors += 1
                        if consecutive_errors > self.config.max_stream_parse_errors:
                            raise ProviderError(
                                f"Too many malformed lines in pull stream for {model}"
                            )
                    continue
                consecutive_errors = 0
                if isinstance(event, ErrorEvent):
                    raise ProviderError(f"Model pull failed: {event.message}")
                if isinstance(event, StatusEvent):
                    yield progress_from_status(event)

        self._model_cache = None
        logger.info(f"Model {model} pulled")

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    def _require_running(self) -> None:
        if self._state != RuntimeState.HEALTHY:
            raise RuntimeUnhealthy(f"Runtime is {self._state.value}")

    async def embed(
        self,
        texts: List[str],
        model: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> List[List[float]]:
        """
        Embed texts on the daemon.

        Raises:
            RuntimeUnhealthy: If the runtime is not healthy
            ProviderError: If the request fails
        """
        self._require_running()
        response = await self.client.embed(texts, model=model, timeout=timeout)
        return response.embeddings

    async def generate(
        self,
        prompt: str,
        model: Optional[str] = None,
        options: Optional[GenerationOptions] = None,
        system_prompt: Optional[str] = None,
    ) -> AsyncIterator[GenerationChunk]:
        """
        Stream a generation as GenerationChunk increments.

        Closing the returned iterator closes the HTTP stream. Malformed lines
        are logged and skipped.

        Raises:
            RuntimeUnhealthy: If the runtime is not healthy
            ProviderError: If the daemon reports an error
        """
        self._require_running()
        payload = self.client.build_generate_payload(
            prompt, model=model or self.model, options=options, system_prompt=system_prompt
        )
        async with aclosing(decode_stream(self.client.stream_lines("/api/generate", payload))) as events:
            async for event in events:
                if isinstance(event, PartialOutput):
                    yield GenerationChunk(
                        partial_text=event.text,
                        done=event.done,
                        model=event.model,
                        eval_count=event.eval_count,
                    )
                    if event.done:
                        return
                elif isinstance(event, ErrorEvent):
                    raise ProviderError(f"Generation failed: {event.message}")


def _has_model(available: List[str], name: str) -> bool:
    if name in available:
        return True
    if ":" not in name:
        return f"{name}:latest" in available
    return False
