import uuid
import logging
import threading
from collections import OrderedDict, deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import config
from utils.exceptions import ConflictError, LanternError, OperationCancelled

logger = logging.getLogger(__name__)

TASK_HISTORY_LIMIT = 200


class TaskState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TaskRecord:
    id: str
    interface: str
    kind: str
    state: TaskState = TaskState.PENDING
    submitted_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)
    done_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self.state in (TaskState.SUCCEEDED, TaskState.FAILED, TaskState.CANCELLED)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.done_event.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'interface': self.interface,
            'kind': self.kind,
            'state': self.state.value,
            'submitted_at': self.submitted_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'result': self.result,
            'error': self.error,
        }


class TaskRunner:
    """
    Runs long operations off the control loop.

    Tasks on the same interface run one after another; tasks on different
    interfaces run in parallel. Each interface has its own FIFO and only its head
    task is handed to the pool, so a backlog on one interface never holds workers
    that other interfaces need. A superseding submission sets the cancel event of
    every unfinished task on that interface before queueing.
    """

    def __init__(self, workers: Optional[int] = None):
        self._executor = ThreadPoolExecutor(max_workers=workers or config.TASK_WORKERS,
                                            thread_name_prefix="lantern-task")
        self._lock = threading.Lock()
        self._tasks: "OrderedDict[str, TaskRecord]" = OrderedDict()
        # interface -> tasks waiting behind the running one; present while the interface is busy
        self._queues: Dict[str, deque] = {}
        self._closed = False

    def submit(self, interface: str, kind: str, func: Callable[[threading.Event], Any],
               supersede: bool = False) -> TaskRecord:
        """
        Queue func(cancel_event) for an interface.

        Args:
            interface: Interface the task operates on
            kind: Short label such as 'apply' or 'wifi-connect'
            func: Callable receiving the task's cancel event
            supersede: Cancel unfinished tasks on the same interface first

        Returns:
            TaskRecord: Record tracking the task, also available through get()
        """
        if supersede:
            self.cancel(interface)
        record = TaskRecord(id=uuid.uuid4().hex, interface=interface, kind=kind)
        with self._lock:
            self._tasks[record.id] = record
            while len(self._tasks) > TASK_HISTORY_LIMIT:
                oldest_id, oldest = next(iter(self._tasks.items()))
                if not oldest.finished:
                    break
                del self._tasks[oldest_id]
            idle = interface not in self._queues
            self._queues.setdefault(interface, deque()).append((record, func))
        logger.info(f"Task {record.id} ({kind}) queued for {interface}")
        if idle:
            self._dispatch(interface)
        return record

    def _dispatch(self, interface: str) -> None:
        """Hand the next queued task of an interface to the pool."""
        while True:
            with self._lock:
                queue = self._queues.get(interface)
                if not queue:
                    self._queues.pop(interface, None)
                    return
                record, func = queue.popleft()
                if not self._closed:
                    self._executor.submit(self._run, record, func)
                    return
            self._finish(record, TaskState.CANCELLED)

    def _run(self, record: TaskRecord, func: Callable[[threading.Event], Any]) -> None:
        try:
            self._execute(record, func)
        finally:
            self._dispatch(record.interface)

    def _execute(self, record: TaskRecord, func: Callable[[threading.Event], Any]) -> None:
        if record.cancel_event.is_set():
            self._finish(record, TaskState.CANCELLED)
            return
        record.state = TaskState.RUNNING
        record.started_at = datetime.now()
        try:
            result = func(record.cancel_event)
        except OperationCancelled as e:
            self._finish(record, TaskState.CANCELLED, error=e.to_dict())
        except LanternError as e:
            logger.error(f"Task {record.id} ({record.kind}) on {record.interface} failed: {e}")
            self._finish(record, TaskState.FAILED, error=e.to_dict())
        except Exception as e:
            logger.exception(f"Task {record.id} ({record.kind}) on {record.interface} crashed")
            self._finish(record, TaskState.FAILED, error={'error': str(e), 'type': e.__class__.__name__})
        else:
            if hasattr(result, 'to_dict'):
                result = result.to_dict()
            self._finish(record, TaskState.SUCCEEDED, result=result)

    def _finish(self, record: TaskRecord, state: TaskState, result=None, error=None) -> None:
        record.state = state
        record.result = result
        record.error = error
        record.finished_at = datetime.now()
        record.done_event.set()
        logger.info(f"Task {record.id} ({record.kind}) on {record.interface}: {state.value}")

    def get(self, task_id: str) -> Optional[TaskRecord]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self, interface: Optional[str] = None) -> List[TaskRecord]:
        with self._lock:
            tasks = list(self._tasks.values())
        if interface:
            tasks = [task for task in tasks if task.interface == interface]
        return tasks

    def cancel(self, interface: str) -> int:
        """Set the cancel event of every unfinished task on an interface."""
        cancelled = 0
        for task in self.list_tasks(interface):
            if not task.finished and not task.cancel_event.is_set():
                task.cancel_event.set()
                cancelled += 1
        if cancelled:
            logger.info(f"Cancelled {cancelled} task(s) on {interface}")
        return cancelled

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            self._closed = True
            interfaces = {task.interface for task in self._tasks.values()}
        for interface in interfaces:
            self.cancel(interface)
        self._executor.shutdown(wait=wait)


class InterfaceRoles:
    """Tracks which managed role (wifi-client, hotspot, tunnel) owns each interface."""

    def __init__(self):
        self._lock = threading.Lock()
        self._owners: Dict[str, str] = {}

    def check(self, interface: str, role: str) -> None:
        """Raise ConflictError if the interface is owned by a different role."""
        with self._lock:
            owner = self._owners.get(interface)
        if owner is not None and owner != role:
            raise ConflictError(interface, owner, role)

    def claim(self, interface: str, role: str) -> None:
        with self._lock:
            owner = self._owners.get(interface)
            if owner is not None and owner != role:
                raise ConflictError(interface, owner, role)
            self._owners[interface] = role

    def release(self, interface: str, role: Optional[str] = None) -> None:
        with self._lock:
            if role is None or self._owners.get(interface) == role:
                self._owners.pop(interface, None)

    def owner(self, interface: str) -> Optional[str]:
        with self._lock:
            return self._owners.get(interface)

    def to_dict(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._owners)
