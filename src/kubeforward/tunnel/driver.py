"""
Tunnel driver: one local listener forwarding to one remote target.

Each started tunnel runs as its own asyncio task:

    prepare target -> bind local listener -> report ACTIVE -> serve
        local connection N  <->  transport.open_stream()  (one stream each)

The driver never touches session state. It reports outcomes through the
callback it was started with, tagged with the generation it was started
with: ACTIVE once the listener is bound, then exactly one terminal outcome,
STOPPED on cancel or FAILED(reason) on setup failure or stream error.
"""

import asyncio
from functools import partial
from typing import Callable

from kubeforward.config import config
from kubeforward.discovery.snapshot import TunnelTarget
from kubeforward.exceptions import SetupError, StreamError
from kubeforward.models.entries import DriverOutcome, PortEntry
from kubeforward.models.enums import OutcomeKind
from kubeforward.tunnel.pipe import splice
from kubeforward.tunnel.transport import Transport
from kubeforward.utils.logger import format_traceback, get_logger

logger = get_logger(__name__)

ReportFn = Callable[[DriverOutcome], None]


class DriverHandle:
    """
    Handle for one started tunnel.

    Owned by whoever started the tunnel; used to cancel it and to guard the
    exactly-once terminal report.
    """

    def __init__(
        self,
        entry: PortEntry,
        local_port: int,
        generation: int,
        report: ReportFn,
    ):
        self.entry = entry
        self.local_port = local_port
        self.generation = generation
        self.task: asyncio.Task | None = None
        self.server: asyncio.AbstractServer | None = None
        self.cancelled = False
        self.active = False
        self.finished = False
        self._report = report
        self._failure: asyncio.Future = asyncio.get_running_loop().create_future()
        self._writers: set[asyncio.StreamWriter] = set()
        self._connections: set[asyncio.Task] = set()
        self.log_prefix = f"[Driver {entry.display_name} g{generation}]"

    @property
    def done(self) -> bool:
        return self.task is None or self.task.done()

    # -------------------------------------------------------------------------
    # Outcome Reporting
    # -------------------------------------------------------------------------

    def report_active(self) -> None:
        if self.cancelled or self.finished or self.active:
            return
        self.active = True
        self._send(OutcomeKind.ACTIVE)

    def report_stopped(self) -> None:
        if self.finished:
            return
        self.finished = True
        self._send(OutcomeKind.STOPPED)

    def report_failed(self, reason: str) -> None:
        if self.finished or self.cancelled:
            return
        self.finished = True
        self._send(OutcomeKind.FAILED, reason)

    def _send(self, kind: OutcomeKind, reason: str | None = None) -> None:
        self._report(
            DriverOutcome(
                key=self.entry.key,
                generation=self.generation,
                kind=kind,
                reason=reason,
            )
        )

    # -------------------------------------------------------------------------
    # Resources
    # -------------------------------------------------------------------------

    def fail(self, error: Exception) -> None:
        """Mark the whole tunnel as broken from inside a connection handler."""
        if not self._failure.done():
            self._failure.set_exception(error)

    async def wait_failure(self) -> None:
        await self._failure

    def track(self, writer: asyncio.StreamWriter) -> None:
        self._writers.add(writer)

    def untrack(self, writer: asyncio.StreamWriter) -> None:
        self._writers.discard(writer)

    def add_connection(self, task: asyncio.Task) -> None:
        self._connections.add(task)
        task.add_done_callback(self._connections.discard)

    def teardown(self) -> None:
        """Release the listener and drop every connection immediately."""
        if self.server is not None:
            self.server.close()
        for writer in list(self._writers):
            writer.transport.abort()
        self._writers.clear()
        for task in list(self._connections):
            task.cancel()
        if not self._failure.done():
            self._failure.cancel()


class TunnelDriver:
    """
    Starts and cancels tunnels over a transport.

    Args:
        transport: Transport used to reach remote targets.
        bind_host: Local address for listeners (config.LOCAL_BIND_HOST).
        setup_timeout: Bound on target resolution and stream opening.
        chunk_size: Bytes per read when piping.
    """

    def __init__(
        self,
        transport: Transport,
        bind_host: str | None = None,
        setup_timeout: float | None = None,
        chunk_size: int | None = None,
    ):
        self.transport = transport
        self.bind_host = bind_host or config.LOCAL_BIND_HOST
        self.setup_timeout = setup_timeout or config.SETUP_TIMEOUT_SECONDS
        self.chunk_size = chunk_size or config.PIPE_CHUNK_SIZE

    def start(
        self,
        entry: PortEntry,
        local_port: int,
        generation: int,
        report: ReportFn,
    ) -> DriverHandle:
        """Start a tunnel task. Must be called from the event loop."""
        handle = DriverHandle(entry, local_port, generation, report)
        handle.task = asyncio.create_task(
            self._run(handle),
            name=f"tunnel-{entry.display_name}-g{generation}",
        )
        logger.debug(f"{handle.log_prefix} Started on local port {local_port}")
        return handle

    def cancel(self, handle: DriverHandle) -> None:
        """
        Cancel a tunnel.

        Returns without awaiting: the listener is closed and every connection
        aborted before returning, so no more bytes are forwarded and the
        local port can be bound again. STOPPED is reported here unless a
        terminal outcome was already sent.
        """
        if handle.cancelled:
            return
        handle.cancelled = True
        handle.teardown()
        if handle.task is not None:
            handle.task.cancel()
        handle.report_stopped()
        logger.debug(f"{handle.log_prefix} Cancelled")

    async def wait_closed(
        self, handle: DriverHandle, timeout: float | None = None
    ) -> bool:
        """Wait for the tunnel task to unwind. Returns False on timeout."""
        if handle.task is None:
            return True
        done, _ = await asyncio.wait(
            {handle.task}, timeout=timeout or config.CANCEL_TIMEOUT_SECONDS
        )
        return bool(done)

    # -------------------------------------------------------------------------
    # Tunnel Task
    # -------------------------------------------------------------------------

    async def _run(self, handle: DriverHandle) -> None:
        entry = handle.entry
        prefix = handle.log_prefix
        try:
            if entry.protocol.upper() != "TCP":
                # Pod portforward carries TCP only
                raise SetupError(f"{entry.protocol} ports cannot be forwarded")

            target = await asyncio.wait_for(
                self.transport.prepare(entry), timeout=self.setup_timeout
            )
            try:
                # No await between bind and assignment; teardown sees the listener
                handle.server = await asyncio.start_server(
                    partial(self._on_client, handle, target),
                    self.bind_host,
                    handle.local_port,
                    start_serving=False,
                )
            except OSError as e:
                raise SetupError(
                    f"Cannot listen on {self.bind_host}:{handle.local_port}: "
                    f"{e.strerror or e}"
                ) from e
            await handle.server.start_serving()

            logger.info(
                f"{prefix} Forwarding {self.bind_host}:{handle.local_port} "
                f"-> {target.pod}:{target.port}"
            )
            handle.report_active()
            await handle.wait_failure()

        except asyncio.CancelledError:
            handle.report_stopped()
            raise
        except asyncio.TimeoutError:
            logger.warning(f"{prefix} Setup timed out after {self.setup_timeout}s")
            handle.report_failed(f"Setup timed out after {self.setup_timeout:g}s")
        except (SetupError, StreamError) as e:
            logger.warning(f"{prefix} {e}")
            handle.report_failed(str(e))
        except Exception as e:
            logger.error(f"{prefix} Unexpected error: {e}")
            logger.debug(f"{prefix} Traceback:\n{format_traceback(e)}")
            handle.report_failed(f"Unexpected error: {e}")
        finally:
            handle.teardown()

    async def _on_client(
        self,
        handle: DriverHandle,
        target: TunnelTarget,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        if handle.cancelled:
            writer.transport.abort()
            return

        task = asyncio.current_task()
        if task is not None:
            handle.add_connection(task)
        handle.track(writer)
        peer = writer.get_extra_info("peername")
        prefix = f"{handle.log_prefix} [{peer}]"
        logger.debug(f"{prefix} New local connection")

        remote = None
        try:
            try:
                remote = await asyncio.wait_for(
                    self.transport.open_stream(target), timeout=self.setup_timeout
                )
            except (SetupError, asyncio.TimeoutError, OSError) as e:
                reason = str(e) or "timed out"
                logger.warning(f"{prefix} Failed to open remote stream: {reason}")
                handle.fail(StreamError(f"Failed to open remote stream: {reason}"))
                return

            handle.track(remote.writer)
            error = await splice(
                reader, writer, remote.reader, remote.writer, self.chunk_size
            )
            remote_error = remote.error()
            if remote_error:
                logger.warning(f"{prefix} Remote stream error: {remote_error}")
                handle.fail(StreamError(f"Remote stream error: {remote_error}"))
            elif error is not None:
                logger.debug(f"{prefix} Connection ended with {error!r}")
            else:
                logger.debug(f"{prefix} Connection closed")
        finally:
            handle.untrack(writer)
            if remote is not None:
                handle.untrack(remote.writer)
            writer.close()
