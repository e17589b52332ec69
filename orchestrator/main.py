"""Central entry point for the notification and reminder service."""
from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

if __package__ is None or __package__ == "":  # pragma: no cover - runtime safety for script execution
    sys.path.append(str(Path(__file__).resolve().parent.parent))

from agents.appointments import AppointmentExpirySweep
from agents.availability import AvailabilityExpirySweep
from agents.reminders import ReminderSweep
from agents.sweep import Sweep, SweepResult, utc_now
from connector import DocumentStore, InMemoryDocumentStore
from connector.firestore_client import FirestoreClient
from notifications.dispatcher import Dispatcher
from notifications.registry import ConnectionRegistry
from notifications.store import NotificationStore
from orchestrator.config import Settings

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DEFAULT_HISTORY_LIMIT = 1000

REMINDERS_TASK = "appointment_reminders"
AVAILABILITY_TASK = "availability_expiry"
APPOINTMENTS_TASK = "appointment_expiry"


def _iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds")


class TaskLogger:
    """Keeps the run history of every scheduled sweep in a JSON file.

    Without a path, runs are only reported through ``logging``.
    """

    def __init__(self, log_path: Optional[Path], *, max_entries: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._log_path = log_path
        self._max_entries = max(1, max_entries)
        self._lock = threading.Lock()
        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)

    def record(
        self,
        task_name: str,
        status: str,
        *,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        message: Optional[str] = None,
        details: Optional[Dict[str, object]] = None,
    ) -> Dict[str, object]:
        completed_at = completed_at or utc_now()
        entry: Dict[str, object] = {
            "task": task_name,
            "status": status,
            "started_at": _iso(started_at or completed_at),
            "completed_at": _iso(completed_at),
        }
        if message:
            entry["message"] = message
        if details is not None:
            entry["details"] = details

        logger.debug("Run of %s recorded as %s", task_name, status)
        if self._log_path is not None:
            with self._lock:
                runs = self._load()
                runs.append(entry)
                text = json.dumps(runs[-self._max_entries:], indent=2)
                self._log_path.write_text(text + "\n", encoding="utf-8")
        return entry

    def history(self) -> List[Dict[str, object]]:
        if self._log_path is None:
            return []
        with self._lock:
            return self._load()

    def _load(self) -> List[Dict[str, object]]:
        try:
            text = self._log_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        if not text.strip():
            return []
        try:
            runs = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"{self._log_path} is not valid JSON: {exc.msg}") from exc
        if not isinstance(runs, list):
            raise ValueError(f"{self._log_path} does not hold a list of runs")
        return runs


@dataclass
class ScheduledTask:
    """A sweep run every ``interval``."""

    name: str
    interval: timedelta
    action: Callable[[], Optional[Dict[str, object]]]
    next_run: datetime = field(default_factory=utc_now)
    running: bool = False

    def mark_started(self, now: datetime) -> None:
        self.running = True
        self.next_run = now + self.interval


class IntervalTaskScheduler:
    """Polls fixed-interval tasks and runs each due task in its own worker thread.

    A task whose previous run is still in progress when it comes due again is
    skipped for that tick, so a slow sweep never overlaps itself. Every run,
    scheduled or started with ``run_now``, lands in the task history.
    """

    def __init__(
        self,
        history: TaskLogger,
        *,
        poll_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._history = history
        self._poll_interval_seconds = max(0.1, poll_interval_seconds)
        self._clock = clock
        self._tasks: Dict[str, ScheduledTask] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._workers: List[threading.Thread] = []

    def add_task(
        self,
        name: str,
        interval_seconds: int,
        action: Callable[[], Optional[Dict[str, object]]],
        *,
        run_immediately: bool = False,
    ) -> ScheduledTask:
        interval = timedelta(seconds=max(1, interval_seconds))
        now = self._clock()
        task = ScheduledTask(
            name=name,
            interval=interval,
            action=action,
            next_run=now if run_immediately else now + interval,
        )
        self._tasks[name] = task
        return task

    def run_pending(self) -> List[threading.Thread]:
        """Start every due task that is not already running and return the started workers."""

        now = self._clock()
        started: List[threading.Thread] = []
        for task in self._tasks.values():
            with self._lock:
                if now < task.next_run:
                    continue
                if task.running:
                    logger.warning("Skipping %s tick; previous run still in progress", task.name)
                    task.next_run = now + task.interval
                    continue
                task.mark_started(now)
            worker = threading.Thread(target=self._run_task, args=(task,), name=f"task-{task.name}", daemon=True)
            worker.start()
            started.append(worker)
        self._workers = [worker for worker in self._workers if worker.is_alive()] + started
        return started

    def run_now(self, name: str) -> Optional[Dict[str, object]]:
        """Run one task in the calling thread; a failure is recorded and re-raised."""

        try:
            task = self._tasks[name]
        except KeyError as exc:
            raise ValueError(f"Unknown task '{name}'") from exc
        return self._execute(task)

    def _run_task(self, task: ScheduledTask) -> None:
        try:
            self._execute(task)
        except Exception:  # noqa: BLE001 - failure is recorded; other tasks keep running
            logger.exception("Task %s failed", task.name)
        finally:
            with self._lock:
                task.running = False

    def _execute(self, task: ScheduledTask) -> Optional[Dict[str, object]]:
        started_at = self._clock()
        try:
            summary = task.action()
        except Exception as exc:
            self._history.record(
                task.name, "failed", started_at=started_at, completed_at=self._clock(), message=str(exc)
            )
            raise
        self._history.record(
            task.name,
            "success",
            started_at=started_at,
            completed_at=self._clock(),
            details=summary if isinstance(summary, dict) else None,
        )
        return summary

    def start(self) -> None:
        if threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._handle_stop_signal)
            signal.signal(signal.SIGTERM, self._handle_stop_signal)

        try:
            while not self._stop_event.is_set():
                self.run_pending()
                self._stop_event.wait(self._poll_interval_seconds)
        finally:
            self._stop_event.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        for worker in self._workers:
            worker.join(timeout)

    def _handle_stop_signal(self, signum: int, frame) -> None:  # type: ignore[override]
        self._stop_event.set()


@dataclass
class NotificationService:
    """Every long-lived component of the running service, wired together."""

    settings: Settings
    store: DocumentStore
    registry: ConnectionRegistry
    notifications: NotificationStore
    dispatcher: Dispatcher
    sweeps: Dict[str, Sweep]
    task_logger: TaskLogger

    def run_sweep(self, name: str) -> Dict[str, object]:
        try:
            sweep = self.sweeps[name]
        except KeyError as exc:
            raise ValueError(f"Unknown sweep '{name}'") from exc
        result: SweepResult = sweep.run()
        return result.to_summary()


def build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "firestore":
        return FirestoreClient(
            project_id=settings.firestore_project_id or "",
            database=settings.firestore_database,
            emulator_host=settings.firestore_emulator_host,
            access_token=settings.firestore_access_token,
            timeout=settings.firestore_timeout,
        )
    logger.warning("Using the in-memory document store; data is lost on restart")
    return InMemoryDocumentStore()


def build_service(settings: Settings, store: Optional[DocumentStore] = None) -> NotificationService:
    store = store if store is not None else build_store(settings)
    registry = ConnectionRegistry()
    notification_store = NotificationStore(store)
    dispatcher = Dispatcher(notification_store, registry, broadcast_mode=settings.broadcast_mode)
    tz = settings.tz
    sweeps: Dict[str, Sweep] = {
        REMINDERS_TASK: ReminderSweep(store, dispatcher, tz=tz),
        AVAILABILITY_TASK: AvailabilityExpirySweep(store, grace=settings.expiry_grace, tz=tz),
        APPOINTMENTS_TASK: AppointmentExpirySweep(store, grace=settings.expiry_grace, tz=tz),
    }
    return NotificationService(
        settings=settings,
        store=store,
        registry=registry,
        notifications=notification_store,
        dispatcher=dispatcher,
        sweeps=sweeps,
        task_logger=TaskLogger(settings.task_log_path),
    )


def build_scheduler(service: NotificationService) -> IntervalTaskScheduler:
    scheduler = IntervalTaskScheduler(service.task_logger)
    for name in service.sweeps:
        scheduler.add_task(
            name,
            service.settings.sweep_interval_seconds,
            lambda name=name: service.run_sweep(name),
        )
    return scheduler


def run_server(service: NotificationService) -> None:
    from api.app import create_app

    app, socketio = create_app(service)
    scheduler = build_scheduler(service)
    socketio.start_background_task(scheduler.start)
    service.task_logger.record("scheduler", "started", message="Sweep scheduler started.")
    logger.info("Server running on port %s", service.settings.port)
    try:
        socketio.run(
            app,
            host=service.settings.host,
            port=service.settings.port,
            allow_unsafe_werkzeug=True,
        )
    finally:
        scheduler.stop(timeout=5)
        service.task_logger.record("scheduler", "stopped", message="Sweep scheduler stopped.")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Notification and reminder service")
    parser.add_argument(
        "command",
        nargs="?",
        choices=("serve", "run_reminders", "run_availability", "run_appointments"),
        default="serve",
        help="Command to execute",
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    service = build_service(settings)

    one_off = {
        "run_reminders": REMINDERS_TASK,
        "run_availability": AVAILABILITY_TASK,
        "run_appointments": APPOINTMENTS_TASK,
    }
    if args.command in one_off:
        summary = build_scheduler(service).run_now(one_off[args.command])
        print(json.dumps(summary, indent=2))
    else:
        run_server(service)
    return 0


if __name__ == "__main__":
    sys.exit(main())
