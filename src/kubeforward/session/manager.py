"""
Session manager: reconciles desired tunnels with running drivers.

Architecture:
    toggle() / toggle_all_for_service() / driver outcomes
        -> one asyncio.Queue
        -> control loop (single writer of the session table)
        -> StatePublisher (immutable snapshots for the UI)

Public operations only enqueue and never raise. The control loop applies
one command at a time, so the table needs no locks. Every driver start bumps
the entry's generation; outcomes carrying any other generation, or arriving
after the driver was cancelled, are discarded.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime

from kubeforward.config import ForwardConfig, config as default_config
from kubeforward.exceptions import ForwardError, RaceDiscard, SetupError
from kubeforward.models.entries import (
    DriverOutcome,
    EntryKey,
    PortEntry,
    ServiceInfo,
    TunnelSession,
    entries_from_services,
)
from kubeforward.models.enums import OutcomeKind, TiePolicy, TunnelStatus
from kubeforward.session.ports import LocalPortAllocator
from kubeforward.session.publisher import StatePublisher
from kubeforward.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Commands
# =============================================================================


@dataclass(frozen=True)
class ToggleCommand:
    key: EntryKey


@dataclass(frozen=True)
class ToggleServiceCommand:
    service: str


@dataclass(frozen=True)
class RetryCommand:
    key: EntryKey
    generation: int


@dataclass(frozen=True)
class ShutdownCommand:
    pass


# =============================================================================
# Session Manager
# =============================================================================


class SessionManager:
    """
    Owns the table of tunnel sessions for one namespace snapshot.

    Args:
        services: Namespace snapshot; fixed for the manager's lifetime.
        driver: Object with start(entry, local_port, generation, report),
            cancel(handle) and async wait_closed(handle, timeout).
        allocator: Local port allocator.
        publisher: State publisher; one is created if omitted.
        cfg: Configuration; the global config if omitted.
    """

    def __init__(
        self,
        services: list[ServiceInfo],
        driver,
        allocator: LocalPortAllocator | None = None,
        publisher: StatePublisher | None = None,
        cfg: ForwardConfig | None = None,
    ):
        self.config = cfg or default_config
        self.driver = driver
        self.allocator = allocator or LocalPortAllocator(
            host=self.config.LOCAL_BIND_HOST,
            prefer_remote_port=self.config.PREFER_REMOTE_PORT,
        )

        self._sessions: dict[EntryKey, TunnelSession] = {}
        self._by_service: dict[str, list[EntryKey]] = {}
        for entry in entries_from_services(services):
            self._sessions[entry.key] = TunnelSession(entry=entry)
            self._by_service.setdefault(entry.service, []).append(entry.key)

        self.publisher = publisher or StatePublisher(
            queue_size=self.config.SUBSCRIBER_QUEUE_SIZE
        )
        self.publisher.publish(s.to_view() for s in self._sessions.values())

        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._retry_timers: dict[EntryKey, asyncio.TimerHandle] = {}
        self._retired: list = []
        self._stopped = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def services(self) -> list[str]:
        return list(self._by_service)

    # -------------------------------------------------------------------------
    # Read Path
    # -------------------------------------------------------------------------

    def list_port_entries(self) -> list[tuple[PortEntry, TunnelStatus]]:
        """Port entries with their status, ordered by (service, remote port)."""
        return [(row.entry, row.status) for row in self.publisher.snapshot()]

    def entries_for_service(self, service: str) -> list[PortEntry]:
        return [self._sessions[key].entry for key in self._by_service.get(service, [])]

    def get_session(self, key: EntryKey):
        """Published row for an entry, or None."""
        return self.publisher.get(key)

    # -------------------------------------------------------------------------
    # Control Surface
    # -------------------------------------------------------------------------

    def toggle(self, key: EntryKey) -> None:
        """Flip the requested state of one entry."""
        self._submit(ToggleCommand(key))

    def toggle_all_for_service(self, service: str) -> None:
        """Turn every port of a service on or off, against the majority."""
        self._submit(ToggleServiceCommand(service))

    def on_driver_outcome(self, outcome: DriverOutcome) -> None:
        """Intake for driver outcomes. Safe from any thread, at any time."""
        self._submit(outcome)

    def _submit(self, item) -> None:
        if self._stopped:
            return
        loop = self._loop
        if loop is not None and not loop.is_closed() and not _on_loop(loop):
            loop.call_soon_threadsafe(self._queue.put_nowait, item)
        else:
            self._queue.put_nowait(item)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._task = asyncio.create_task(
            self._control_loop(), name="session-control-loop"
        )
        logger.info(
            f"[SessionManager] Started with {len(self._sessions)} port entries "
            f"in {len(self._by_service)} services"
        )

    async def join(self) -> None:
        """Wait until every queued command and outcome has been applied."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel every tunnel, wait for them to unwind, and end the loop."""
        if not self.is_running:
            return
        self._queue.put_nowait(ShutdownCommand())
        await self._task
        self._task = None

        retired, self._retired = self._retired, []
        if retired:
            results = await asyncio.gather(
                *(
                    self.driver.wait_closed(h, self.config.CANCEL_TIMEOUT_SECONDS)
                    for h in retired
                ),
                return_exceptions=True,
            )
            stuck = sum(1 for r in results if r is False)
            if stuck:
                logger.warning(
                    f"[SessionManager] {stuck} tunnels did not unwind in "
                    f"{self.config.CANCEL_TIMEOUT_SECONDS}s"
                )
        self._stopped = True
        self._drain()
        self.publisher.close()
        logger.info("[SessionManager] Stopped")

    # -------------------------------------------------------------------------
    # Control Loop
    # -------------------------------------------------------------------------

    async def _control_loop(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, ShutdownCommand):
                    changed = self._shutdown_sessions()
                    self._publish(changed)
                    return
                self._publish(self._apply(item))
            except Exception as e:
                logger.exception(f"[SessionManager] Failed to apply {item!r}: {e}")
            finally:
                self._queue.task_done()

    def _drain(self) -> None:
        """Drop outcomes that arrived after the control loop ended."""
        dropped = 0
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.debug(f"[SessionManager] Dropped {dropped} items after shutdown")

    def _publish(self, changed: list[TunnelSession]) -> None:
        if changed:
            self.publisher.publish(s.to_view() for s in changed)

    def _apply(self, item) -> list[TunnelSession]:
        if isinstance(item, DriverOutcome):
            return self._apply_outcome(item)
        if isinstance(item, ToggleCommand):
            return self._apply_toggle(item.key)
        if isinstance(item, ToggleServiceCommand):
            return self._apply_toggle_service(item.service)
        if isinstance(item, RetryCommand):
            return self._apply_retry(item)
        logger.warning(f"[SessionManager] Unknown command {item!r}")
        return []

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def _apply_toggle(self, key: EntryKey) -> list[TunnelSession]:
        session = self._sessions.get(key)
        if session is None:
            logger.warning(f"[SessionManager] Toggle for unknown entry {key}")
            return []
        self._set_requested(session, not session.requested)
        return [session]

    def _apply_toggle_service(self, service: str) -> list[TunnelSession]:
        keys = self._by_service.get(service)
        if not keys:
            logger.warning(f"[SessionManager] Toggle-all for unknown service {service}")
            return []

        sessions = [self._sessions[key] for key in keys]
        on = sum(1 for s in sessions if s.requested)
        off = len(sessions) - on
        if off > on:
            target = True
        elif on > off:
            target = False
        else:
            target = self.config.TOGGLE_ALL_TIE_POLICY == TiePolicy.ON

        logger.info(
            f"[SessionManager] Toggle-all {service}: {on} on, {off} off "
            f"-> {'on' if target else 'off'}"
        )
        changed = []
        for session in sessions:
            if session.requested == target:
                continue
            try:
                self._set_requested(session, target)
            except Exception as e:
                # Entries are independent; contain the failure to this one
                logger.exception(
                    f"[SessionManager] Toggle of {session.entry.display_name} "
                    f"failed: {e}"
                )
                self._mark_failed(session, str(e))
            changed.append(session)
        return changed

    def _apply_retry(self, command: RetryCommand) -> list[TunnelSession]:
        self._retry_timers.pop(command.key, None)
        session = self._sessions.get(command.key)
        if (
            session is None
            or session.generation != command.generation
            or not session.requested
            or session.handle is not None
        ):
            logger.debug(f"[SessionManager] Retry for {command.key} superseded")
            return []
        logger.info(
            f"[SessionManager] Retrying {session.entry.display_name} "
            f"({session.retries}/{self.config.MAX_AUTO_RETRIES})"
        )
        self._launch(session)
        return [session]

    def _apply_outcome(self, outcome: DriverOutcome) -> list[TunnelSession]:
        session = self._sessions.get(outcome.key)
        if session is None:
            return []
        if session.handle is None or outcome.generation != session.generation:
            discard = RaceDiscard(outcome.key, outcome.generation, session.generation)
            logger.debug(f"[SessionManager] {discard} ({outcome.kind.value})")
            return []

        name = session.entry.display_name
        if outcome.kind == OutcomeKind.ACTIVE:
            session.status = TunnelStatus.ACTIVE
            session.last_error = None
            session.retries = 0
            logger.info(f"[SessionManager] {name} active on port {session.local_port}")

        elif outcome.kind == OutcomeKind.STOPPED:
            session.handle = None
            session.requested = False
            session.status = TunnelStatus.STOPPED

        elif outcome.kind == OutcomeKind.FAILED:
            session.handle = None
            reason = outcome.reason or "Unknown error"
            logger.warning(f"[SessionManager] {name} failed: {reason}")
            if session.retries < self.config.MAX_AUTO_RETRIES:
                session.status = TunnelStatus.FAILED
                session.last_error = reason
                session.retries += 1
                self._schedule_retry(session)
            else:
                self._mark_failed(session, reason)

        return [session]

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _set_requested(self, session: TunnelSession, requested: bool) -> None:
        session.requested = requested
        session.retries = 0
        self._cancel_retry(session.entry.key)
        if requested:
            if session.handle is None:
                self._launch(session)
        else:
            self._halt(session)

    def _launch(self, session: TunnelSession) -> None:
        entry = session.entry
        try:
            local_port = self.allocator.allocate(entry)
        except SetupError as e:
            logger.warning(f"[SessionManager] {entry.display_name}: {e}")
            self._mark_failed(session, str(e))
            return

        session.generation += 1
        session.local_port = local_port
        session.status = TunnelStatus.CONNECTING
        session.last_error = None
        session.started_at = datetime.now()
        session.handle = self.driver.start(
            entry, local_port, session.generation, self.on_driver_outcome
        )
        logger.debug(
            f"[SessionManager] {entry.display_name} connecting on port "
            f"{local_port} (generation {session.generation})"
        )

    def _halt(self, session: TunnelSession) -> None:
        handle, session.handle = session.handle, None
        if handle is not None:
            try:
                self.driver.cancel(handle)
            except ForwardError as e:
                logger.warning(
                    f"[SessionManager] Cancel of {session.entry.display_name} "
                    f"raised: {e}"
                )
            self._retired.append(handle)
            self._retired = [h for h in self._retired if not _handle_done(h)]
        session.status = TunnelStatus.STOPPED
        session.last_error = None
        logger.debug(f"[SessionManager] {session.entry.display_name} stopped")

    def _mark_failed(self, session: TunnelSession, reason: str) -> None:
        session.status = TunnelStatus.FAILED
        session.last_error = reason
        # Sticky: the next toggle turns the entry back on
        session.requested = False

    def _schedule_retry(self, session: TunnelSession) -> None:
        key = session.entry.key
        self._cancel_retry(key)
        command = RetryCommand(key=key, generation=session.generation)
        loop = self._loop or asyncio.get_running_loop()
        self._retry_timers[key] = loop.call_later(
            self.config.RETRY_BACKOFF_SECONDS, self._submit, command
        )

    def _cancel_retry(self, key: EntryKey) -> None:
        timer = self._retry_timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _shutdown_sessions(self) -> list[TunnelSession]:
        for key in list(self._retry_timers):
            self._cancel_retry(key)
        changed = []
        for session in self._sessions.values():
            if session.handle is not None or session.requested:
                session.requested = False
                self._halt(session)
                changed.append(session)
        return changed


def _on_loop(loop: asyncio.AbstractEventLoop) -> bool:
    try:
        return asyncio.get_running_loop() is loop
    except RuntimeError:
        return False


def _handle_done(handle) -> bool:
    return bool(getattr(handle, "done", False))
