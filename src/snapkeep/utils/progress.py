"""Stage tracking for backup and restore runs

Each engine run registers an ``OperationTask`` in a ``TaskRegistry`` that the
caller owns and passes in, and moves it through its stages. Observers (the CLI
status line, tests) subscribe with ``on_task_update``.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


class BackupStage(Enum):
    """Backup run stages, in order"""

    INITIALIZING = "initializing"
    CLASSIFYING = "classifying"
    REDACTING = "redacting"
    ENCRYPTING = "encrypting"
    COPYING = "copying"
    MANIFEST_WRITING = "manifest_writing"
    ARCHIVING = "archiving"
    MOVING = "moving"
    DONE = "done"
    FAILED = "failed"


class RestoreStage(Enum):
    """Restore run stages, in order"""

    LOCATING = "locating"
    EXTRACTING = "extracting"
    READING_MANIFEST = "reading_manifest"
    VALIDATING = "validating"
    RESTORING_FILES = "restoring_files"
    DECRYPTING = "decrypting"
    INSTALLING_DEPENDENCIES = "installing_dependencies"
    SETTING_UP_SCHEMA = "setting_up_schema"
    CONFIGURING = "configuring"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STAGES = {BackupStage.DONE, BackupStage.FAILED, RestoreStage.DONE, RestoreStage.FAILED}

DEFAULT_TASK_MAX_AGE_HOURS = 24


@dataclass
class OperationTask:
    """Represents one backup or restore run"""

    task_id: str
    task_type: str  # 'backup' or 'restore'
    target: str  # project name or backup id
    stage: BackupStage | RestoreStage
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: datetime | None = None
    error_message: str | None = None
    result_message: str | None = None
    warnings: list[str] = field(default_factory=list)
    history: list[BackupStage | RestoreStage] = field(default_factory=list)

    @property
    def finished(self) -> bool:
        return self.stage in TERMINAL_STAGES


class TaskRegistry:
    """Holds the tasks of the engines that share it"""

    def __init__(self):
        self.logger = logging.getLogger("TaskRegistry")
        self.tasks: dict[str, OperationTask] = {}
        self._lock = threading.Lock()

        # Callback for UI updates
        self.on_task_update: Callable[[OperationTask], None] | None = None

    def start(self, task_type: str, target: str, stage: BackupStage | RestoreStage) -> OperationTask:
        task_id = f"{task_type}_{uuid.uuid4().hex[:12]}"
        task = OperationTask(task_id=task_id, task_type=task_type, target=target, stage=stage, history=[stage])
        with self._lock:
            self.tasks[task_id] = task
        self._notify_update(task)
        return task

    def advance(self, task: OperationTask, stage: BackupStage | RestoreStage) -> None:
        with self._lock:
            task.stage = stage
            task.history.append(stage)
        self.logger.debug(f"{task.task_id}: {stage.value}")
        self._notify_update(task)

    def warn(self, task: OperationTask, message: str) -> None:
        with self._lock:
            task.warnings.append(message)

    def complete(self, task: OperationTask, stage: BackupStage | RestoreStage, message: str) -> None:
        with self._lock:
            task.stage = stage
            task.history.append(stage)
            task.result_message = message
            task.completed_at = datetime.now()
        self._notify_update(task)

    def fail(self, task: OperationTask, stage: BackupStage | RestoreStage, error: str) -> None:
        with self._lock:
            task.stage = stage
            task.history.append(stage)
            task.error_message = error
            task.completed_at = datetime.now()
        self._notify_update(task)

    def _notify_update(self, task: OperationTask) -> None:
        """Notify callback of task update"""
        if self.on_task_update:
            try:
                self.on_task_update(task)
            except Exception as e:
                self.logger.warning(f"Error in task update callback: {e}")

    def get_task_status(self, task_id: str) -> OperationTask | None:
        return self.tasks.get(task_id)

    def get_all_tasks(self) -> list[OperationTask]:
        return list(self.tasks.values())

    def get_running_tasks(self) -> list[OperationTask]:
        return [task for task in self.tasks.values() if not task.finished]

    def cleanup_old_tasks(self, max_age_hours: int = DEFAULT_TASK_MAX_AGE_HOURS) -> int:
        """Remove old completed tasks from memory

        Args:
            max_age_hours: Maximum age of tasks to keep
        """
        cutoff = datetime.now() - timedelta(hours=max_age_hours)

        with self._lock:
            to_remove = [task_id for task_id, task in self.tasks.items() if task.completed_at and task.completed_at < cutoff]
            for task_id in to_remove:
                del self.tasks[task_id]

        if to_remove:
            self.logger.info(f"Cleaned up {len(to_remove)} old tasks")
        return len(to_remove)
