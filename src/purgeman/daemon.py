"""Process supervision: foreground runs and the background daemon handshake.

Running in the background spawns a child copy of purgeman and talks to it
over pipes:

    parent                                child (--child-process)
    ------                                -----------------------
    write YAML config to stdin  ------>   read stdin to EOF, validate
    close stdin                           connect to iRODS and AMQP
    relay output lines          <------   log lines (stderr merged)
    stop at sentinel            <------   <<COMMUNICATION_CLOSE_SUCCESS>>
                                          or <<COMMUNICATION_CLOSE_ERROR>>

The parent exits once a sentinel arrives; the child keeps running in its
own session.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import subprocess
import sys
import threading
from typing import BinaryIO, Iterator, Protocol, TextIO

from purgeman.config import Settings
from purgeman.errors import ConfigurationError, DaemonStartupError, PurgemanError
from purgeman.observability.logging import configure_logging, silence_logging
from purgeman.observability.metrics import start_metrics_server
from purgeman.service import PurgemanService

logger = logging.getLogger(__name__)

SUCCESS_SENTINEL = "<<COMMUNICATION_CLOSE_SUCCESS>>"
ERROR_SENTINEL = "<<COMMUNICATION_CLOSE_ERROR>>"
CHILD_PROCESS_ARGUMENT = "--child-process"

SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGQUIT)


# ---------------------------------------------------------------------------
# Parent side
# ---------------------------------------------------------------------------


class HandshakeTransport(Protocol):
    """Pipes to a background child."""

    def write(self, data: bytes) -> None: ...

    def close_input(self) -> None: ...

    def readlines(self) -> Iterator[str]: ...


class SubprocessTransport:
    """Spawns ``python -m purgeman --child-process`` detached from the terminal."""

    def __init__(self, argv: list[str] | None = None) -> None:
        self.argv = argv or [sys.executable, "-m", "purgeman", CHILD_PROCESS_ARGUMENT]
        self._process: subprocess.Popen[bytes] | None = None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def start(self) -> None:
        """Spawn the child.

        Raises:
            DaemonStartupError: If the child process cannot be started.
        """
        try:
            self._process = subprocess.Popen(
                self.argv,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except OSError as e:
            logger.error(f"Could not start a child process: {e}")
            raise DaemonStartupError(f"Could not start a child process: {e}") from e

        logger.info(f"Process id = {self._process.pid}")

    def _require_process(self) -> subprocess.Popen[bytes]:
        if self._process is None:
            raise DaemonStartupError("child process is not started")
        return self._process

    def write(self, data: bytes) -> None:
        process = self._require_process()
        if process.stdin is None:
            raise DaemonStartupError("child process has no input pipe")
        process.stdin.write(data)
        process.stdin.flush()

    def close_input(self) -> None:
        process = self._require_process()
        if process.stdin is not None:
            process.stdin.close()

    def readlines(self) -> Iterator[str]:
        process = self._require_process()
        if process.stdout is None:
            raise DaemonStartupError("child process has no output pipe")
        for raw in process.stdout:
            yield raw.decode("utf-8", errors="replace")

    def close(self) -> None:
        """Close our end of the output pipe without waiting for the child."""
        if self._process is not None and self._process.stdout is not None:
            self._process.stdout.close()


class ParentHandshake:
    """Hands the configuration to a background child and waits for its verdict."""

    def __init__(self, transport: HandshakeTransport, relay: TextIO | None = None) -> None:
        self.transport = transport
        self._relay = relay

    def run(self, config_bytes: bytes) -> None:
        """Send the configuration and block until the child reports.

        Output lines other than the sentinels are relayed to stderr.

        Raises:
            DaemonStartupError: If the child reports an error, exits or
                closes its output before reporting, or the pipes fail.
        """
        relay = self._relay or sys.stderr

        logger.info("Sending configuration data")
        try:
            self.transport.write(config_bytes)
            self.transport.close_input()
        except OSError as e:
            logger.error(f"Could not communicate to background process: {e}")
            raise DaemonStartupError(f"Could not communicate to background process: {e}") from e
        logger.info("Successfully sent configuration data to background process")

        try:
            for line in self.transport.readlines():
                message = line.strip()
                if message == SUCCESS_SENTINEL:
                    logger.info("Successfully started background process")
                    return
                if message == ERROR_SENTINEL:
                    logger.error("Failed to start background process")
                    raise DaemonStartupError("Failed to start background process")
                print(message, file=relay)
        except OSError as e:
            logger.error(f"Could not read from background process: {e}")
            raise DaemonStartupError(f"Could not read from background process: {e}") from e

        logger.error("Background process exited before reporting its status")
        raise DaemonStartupError("Failed to start background process")


def run_parent(settings: Settings, transport: SubprocessTransport | None = None) -> None:
    """Run purgeman in the foreground or hand it off to a background child.

    Raises:
        ConfigurationError: If the settings are incomplete.
        DaemonStartupError: If the background child fails to start.
        PurgemanConnectionError: If a foreground run cannot connect.
    """
    settings.validate_config()

    if settings.foreground:
        asyncio.run(run_service(settings))
        return

    logger.info("Running the process in the background mode")
    transport = transport or SubprocessTransport()
    transport.start()
    try:
        ParentHandshake(transport).run(settings.to_yaml())
    finally:
        transport.close()


# ---------------------------------------------------------------------------
# Child side
# ---------------------------------------------------------------------------


class ChildHandshake:
    """Reports startup success or failure to the parent.

    Only the first report is written; later calls do nothing.
    """

    def __init__(self, stream: TextIO) -> None:
        self._stream = stream
        self._lock = threading.Lock()
        self._reported = False

    @property
    def reported(self) -> bool:
        return self._reported

    def succeed(self) -> None:
        self._report(SUCCESS_SENTINEL)

    def fail(self) -> None:
        self._report(ERROR_SENTINEL)

    def _report(self, sentinel: str) -> None:
        with self._lock:
            if self._reported:
                return
            self._reported = True

        try:
            self._stream.write(sentinel + "\n")
            self._stream.flush()
        except (OSError, ValueError) as e:
            # parent already gone
            logger.warning(f"Could not report to the parent process: {e}")


def run_child(stdin: BinaryIO, stdout: TextIO) -> int:
    """Entry point of the background child.

    Returns:
        Process exit status.
    """
    handshake = ChildHandshake(stdout)
    logger.info("Start background process")

    try:
        config_bytes = stdin.read()
    except OSError as e:
        logger.error(f"Could not read configuration: {e}")
        handshake.fail()
        return 1

    try:
        settings = Settings.from_yaml(config_bytes)
        configure_logging(
            level=settings.log_level,
            json_format=settings.log_json,
            log_path=settings.log_path or None,
        )
        settings.validate_config()
    except (ConfigurationError, OSError) as e:
        logger.error(f"Could not read configuration: {e}")
        handshake.fail()
        return 1

    try:
        asyncio.run(run_service(settings, handshake))
    except PurgemanError as e:
        logger.error(f"Could not run purgeman: {e}")
        handshake.fail()
        return 1

    return 0


# ---------------------------------------------------------------------------
# Service runner
# ---------------------------------------------------------------------------


class ServiceRunner:
    """Runs a service until it is destroyed or a shutdown signal arrives."""

    def __init__(
        self,
        settings: Settings,
        handshake: ChildHandshake | None = None,
        service: PurgemanService | None = None,
        install_signal_handlers: bool = True,
    ) -> None:
        self.settings = settings
        self.handshake = handshake
        self.service = service or PurgemanService(settings)
        self.install_signal_handlers = install_signal_handlers
        self._start_task: asyncio.Task[None] | None = None
        self._stop_tasks: set[asyncio.Task[None]] = set()

    async def run(self) -> None:
        """Connect once, report readiness, then serve until stopped.

        Raises:
            PurgemanConnectionError: If the initial connection fails.
            ConfigurationError: If the broker session cannot pick a queue.
        """
        loop = asyncio.get_running_loop()
        if self.install_signal_handlers:
            for sig in SHUTDOWN_SIGNALS:
                loop.add_signal_handler(sig, self._signal_handler, sig)

        try:
            try:
                await self.service.connect()
            except PurgemanError as e:
                logger.error(f"Could not connect the service: {e}")
                if self.handshake is not None:
                    self.handshake.fail()
                raise

            if self.service.terminating:
                return

            if self.settings.metrics_port > 0:
                start_metrics_server(self.settings.metrics_port)

            if self.handshake is not None:
                self.handshake.succeed()
                silence_logging()

            self._start_task = asyncio.create_task(self.service.start())
            try:
                await self._start_task
            except asyncio.CancelledError:
                if not self.service.terminating:
                    raise
        finally:
            if self.install_signal_handlers:
                for sig in SHUTDOWN_SIGNALS:
                    loop.remove_signal_handler(sig)
            await self.service.destroy()

        logger.info("purgeman stopped")

    def _signal_handler(self, sig: signal.Signals) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received {sig.name}, shutting down")
        if self.handshake is not None:
            self.handshake.fail()

        task = asyncio.create_task(self.stop())
        self._stop_tasks.add(task)
        task.add_done_callback(self._stop_tasks.discard)

    async def stop(self) -> None:
        """Destroy the service and end the run."""
        await self.service.destroy()
        if self._start_task is not None and not self._start_task.done():
            self._start_task.cancel()


async def run_service(settings: Settings, handshake: ChildHandshake | None = None) -> None:
    """Run the purgeman service in the current process."""
    await ServiceRunner(settings, handshake).run()
