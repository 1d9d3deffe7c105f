"""Engine facade: one runtime per session, wired from the components."""
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, List, Optional, Tuple

from rollsync.services.broadcaster import ReconciliationBroadcaster, Snapshot, Subscription
from rollsync.services.credential_service import CredentialRotator, ScanCredential, parse_qr_payload
from rollsync.services.errors import CredentialUnknown, SessionNotFound, ValidationError
from rollsync.services.mutation_coordinator import MutationCoordinator, PendingMutation
from rollsync.services.presence_ledger import PresenceEntry, PresenceLedger
from rollsync.services.report_service import ReportService
from rollsync.services.scheduler import Clock, PeriodicTask, utc_now
from rollsync.services.session_machine import AttendanceSession, Phase, SessionStateMachine, SessionType
from rollsync.services.store import MemoryStore, PresenceStore

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS = {
    'CREDENTIAL_INTERVAL': 5,
    'CREDENTIAL_GRACE_RATIO': 0.4,
    'CREDENTIAL_RETENTION': 60,
    'SNAPSHOT_INTERVAL': 4,
    'SUBSCRIPTION_QUEUE_SIZE': 100,
    'SUBSCRIPTION_IDLE_TIMEOUT': 120,
    'SESSION_RETENTION': 24 * 60 * 60,
    'SESSION_SWEEP_INTERVAL': 5 * 60,
    'ATTENDANCE_TIMERS_ENABLED': True,
}


class SessionRuntime:
    """Everything the engine keeps in memory for one session."""

    def __init__(self, session: AttendanceSession, store: PresenceStore, settings: Dict[str, Any],
                 clock: Clock = utc_now, entries=()):
        self.settings = settings
        self.clock = clock
        self.machine = SessionStateMachine(session, store, clock)
        self.rotator = CredentialRotator(
            self.machine,
            interval=settings['CREDENTIAL_INTERVAL'],
            grace_ratio=settings['CREDENTIAL_GRACE_RATIO'],
            retention=settings['CREDENTIAL_RETENTION'],
            clock=clock,
        )
        self.ledger = PresenceLedger(self.machine, self.rotator, store, clock, entries)
        self.broadcaster = ReconciliationBroadcaster(
            self.machine,
            self.ledger,
            queue_size=settings['SUBSCRIPTION_QUEUE_SIZE'],
            idle_timeout=settings['SUBSCRIPTION_IDLE_TIMEOUT'],
            clock=clock,
        )
        self.coordinator = MutationCoordinator(self.ledger, self.broadcaster, clock)
        self._tasks: List[PeriodicTask] = []

    @property
    def session_id(self) -> str:
        return self.machine.session_id

    @property
    def timers_running(self) -> bool:
        return any(task.running for task in self._tasks)

    def rotate(self) -> Optional[ScanCredential]:
        """Issue the next credential and show it on dashboards; None once not Active."""
        with self.machine.lock:
            if not self.machine.is_active():
                return None
            credential = self.rotator.issue()
            self.broadcaster.publish_credential(credential)
            return credential

    def resync(self) -> Snapshot:
        return self.broadcaster.resync()

    def activate(self) -> ScanCredential:
        """Entering Active: first credential right away, then the periodic timers."""
        credential = self.rotate()
        self.resync()
        if self.settings['ATTENDANCE_TIMERS_ENABLED']:
            self._tasks = [
                PeriodicTask(f'rotate-{self.session_id}', self.settings['CREDENTIAL_INTERVAL'], self.rotate),
                PeriodicTask(f'resync-{self.session_id}', self.settings['SNAPSHOT_INTERVAL'], self.resync),
            ]
            for task in self._tasks:
                task.start()
        return credential

    def stop_timers(self) -> None:
        for task in self._tasks:
            task.cancel()
        self._tasks = []

    def teardown(self) -> None:
        """Release everything tied to an Ended session."""
        self.stop_timers()
        purged = self.rotator.purge()
        self.broadcaster.close_all()
        logger.info("Session %s torn down (%s credentials purged)", self.session_id, purged)


class AttendanceEngine:
    """
    Entry point for every attendance operation.

    Each session gets its own runtime and lock; operations on different
    sessions never wait on each other. Runtimes are rebuilt from the store
    on first access after a restart.
    """

    def __init__(self, store: PresenceStore = None, clock: Clock = utc_now, **settings: Any):
        self.store = store or MemoryStore()
        self.clock = clock
        self.settings = dict(DEFAULT_SETTINGS)
        self.settings.update({k: v for k, v in settings.items() if v is not None})
        self._runtimes: Dict[str, SessionRuntime] = {}
        self._lock = threading.Lock()
        self._sweeper: Optional[PeriodicTask] = None

    @classmethod
    def from_config(cls, config, store: PresenceStore = None, clock: Clock = utc_now) -> 'AttendanceEngine':
        settings = {key: config.get(key) for key in DEFAULT_SETTINGS}
        return cls(store=store, clock=clock, **settings)

    # Sessions

    def create_session(self, roster_size: int = 0, section: str = None, instructor_id: str = None,
                       session_type='roll') -> AttendanceSession:
        """Open a new session in phase Created; other open sessions of the section are ended."""
        if not isinstance(roster_size, int) or isinstance(roster_size, bool) or roster_size < 0:
            raise ValidationError("Roster size must be a non-negative integer")
        try:
            session_type = SessionType(session_type) if not isinstance(session_type, SessionType) else session_type
        except ValueError:
            raise ValidationError(f"Unknown session type: {session_type}") from None

        if section:
            for existing in self.store.open_sessions():
                if existing.section == section and existing.phase is not Phase.ENDED:
                    logger.info("Ending session %s superseded in section %s", existing.id, section)
                    self.end(existing.id)

        session = AttendanceSession(
            id=AttendanceSession.new_id(),
            roster_size=roster_size,
            section=section,
            instructor_id=instructor_id,
            session_type=session_type,
            created_at=self.clock(),
        )
        self.store.put_session(session)
        runtime = SessionRuntime(session, self.store, self.settings, self.clock)
        with self._lock:
            self._runtimes[session.id] = runtime
        logger.info("Session %s created for section %s", session.id, section)
        return session

    def get_session(self, session_id: str) -> AttendanceSession:
        return self.runtime(session_id).machine.session

    def set_roster_size(self, session_id: str, roster_size: int) -> AttendanceSession:
        return self.runtime(session_id).machine.set_roster_size(roster_size)

    def lock(self, session_id: str) -> AttendanceSession:
        return self.runtime(session_id).machine.lock_session()

    def unlock(self, session_id: str) -> AttendanceSession:
        return self.runtime(session_id).machine.unlock()

    def start(self, session_id: str) -> AttendanceSession:
        runtime = self.runtime(session_id)
        with runtime.machine.lock:
            session = runtime.machine.start()
            runtime.activate()
        return session

    def end(self, session_id: str) -> AttendanceSession:
        """End a session; ending an Ended session is a no-op."""
        runtime = self.runtime(session_id)
        with runtime.machine.lock:
            if runtime.machine.phase is Phase.ENDED:
                return runtime.machine.session
            runtime.stop_timers()
            ended_at = self.clock()
            report = ReportService.build_report(
                runtime.machine.session,
                runtime.ledger.entries(),
                runtime.ledger.stats,
                runtime.rotator.issued_count,
                ended_at,
            )
            session = runtime.machine.end(
                final_report=report,
                credentials_issued=runtime.rotator.issued_count,
            )
            runtime.teardown()
        return session

    # Presence

    def join(self, session_id: str, student_key, section: str = None) -> Tuple[PresenceEntry, bool]:
        return self.runtime(session_id).ledger.record_join(session_id, student_key, section)

    def scan(self, session_id: str, student_key, credential: str, section: str = None) -> Tuple[PresenceEntry, bool]:
        """Mark presence from a scanned credential (bare token or QR payload)."""
        runtime = self.runtime(session_id)
        runtime.machine.require_phase(Phase.ACTIVE, action='scanning')
        if not credential:
            raise CredentialUnknown("QR data is required")
        parsed = parse_qr_payload(credential)
        if parsed['session_id'] and parsed['session_id'] != session_id:
            raise CredentialUnknown("QR code belongs to another session")
        return runtime.ledger.record_scan(session_id, student_key, parsed['token'], section)

    def move(self, session_id: str, student_key, to_status, expected_seq: int,
             from_status=None) -> Tuple[PresenceEntry, Snapshot]:
        return self.runtime(session_id).coordinator.move(
            session_id, student_key, to_status, expected_seq, from_status,
        )

    def pending_moves(self, session_id: str) -> List[PendingMutation]:
        return self.runtime(session_id).coordinator.pending()

    # Dashboards

    def subscribe(self, session_id: str) -> Subscription:
        return self.runtime(session_id).broadcaster.subscribe()

    def get_subscription(self, session_id: str, subscription_id: str) -> Subscription:
        subscription = self.runtime(session_id).broadcaster.get_subscription(subscription_id)
        if subscription is None:
            raise SessionNotFound("Subscription not found", subscription_id=subscription_id)
        return subscription

    def unsubscribe(self, session_id: str, subscription_id: str) -> None:
        self.get_subscription(session_id, subscription_id).close()

    def snapshot(self, session_id: str) -> Snapshot:
        return self.runtime(session_id).broadcaster.snapshot()

    def resync(self, session_id: str) -> Snapshot:
        return self.runtime(session_id).resync()

    def rotate(self, session_id: str) -> Optional[ScanCredential]:
        return self.runtime(session_id).rotate()

    def current_credential(self, session_id: str) -> Optional[ScanCredential]:
        runtime = self.runtime(session_id)
        runtime.machine.require_phase(Phase.ACTIVE, action='showing the QR code')
        return runtime.rotator.current()

    def stats(self, session_id: str) -> Dict[str, Any]:
        runtime = self.runtime(session_id)
        stats = runtime.ledger.stats.to_dict()
        stats.update({
            'credentials_issued': runtime.rotator.issued_count,
            'subscribers': runtime.broadcaster.subscriber_count,
            'snapshots_sent': runtime.broadcaster.snapshots_sent,
            'ledger_version': runtime.ledger.version,
        })
        return stats

    def report(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.get_session(session_id).final_report

    # Lifecycle

    def runtime(self, session_id: str) -> SessionRuntime:
        with self._lock:
            runtime = self._runtimes.get(session_id)
            if runtime is None:
                runtime = self._rehydrate(session_id)
                self._runtimes[session_id] = runtime
        return runtime

    def sweep(self, now: datetime = None) -> List[str]:
        """Archive Ended sessions older than the retention window."""
        now = now or self.clock()
        retention = timedelta(seconds=self.settings['SESSION_RETENTION'])
        archived = []
        for session in self.store.open_sessions():
            if session.phase is not Phase.ENDED or session.ended_at is None:
                continue
            if session.ended_at + retention > now:
                continue
            self.store.archive_session(session.id)
            with self._lock:
                runtime = self._runtimes.pop(session.id, None)
            if runtime is not None:
                runtime.stop_timers()
            archived.append(session.id)
        if archived:
            logger.info("Archived %s ended sessions", len(archived))
        return archived

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and self._sweeper.running

    def start_sweeper(self, context: Callable[[], ContextManager] = None) -> PeriodicTask:
        """
        Run :meth:`sweep` every ``SESSION_SWEEP_INTERVAL`` seconds in the background.

        ``context`` is entered around each run; pass ``app.app_context`` when
        the store needs a Flask application context.
        """
        def run():
            if context is None:
                return self.sweep()
            with context():
                return self.sweep()

        if self._sweeper is None:
            self._sweeper = PeriodicTask('sweep-sessions', self.settings['SESSION_SWEEP_INTERVAL'], run).start()
        return self._sweeper

    def shutdown(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        with self._lock:
            runtimes = list(self._runtimes.values())
        for runtime in runtimes:
            runtime.stop_timers()

    def _rehydrate(self, session_id: str) -> SessionRuntime:
        session = self.store.get_session(session_id) if session_id else None
        if session is None or session.archived:
            raise SessionNotFound(session_id=session_id)
        runtime = SessionRuntime(session, self.store, self.settings, self.clock,
                                 self.store.entries(session_id))
        if session.phase is Phase.ACTIVE:
            # Credentials live only in memory; a restarted Active session rotates afresh.
            runtime.activate()
        logger.info("Session %s restored in phase %s", session_id, session.phase.value)
        return runtime
