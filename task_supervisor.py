"""Scheduled background jobs.

A `TaskSupervisor` owns one APScheduler `BackgroundScheduler` and the job
definitions registered on it. Each job can be started, stopped and
restarted by key.
"""

import atexit
import logging
from datetime import datetime

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.jobstores.base import JobLookupError

logger = logging.getLogger(__name__)


class UnknownTask(KeyError):
    pass


class TaskDefinition:
    def __init__(self, key, name, func, minutes):
        self.key = key
        self.name = name
        self.func = func
        self.minutes = minutes
        self.is_active = False


class TaskSupervisor:
    def __init__(self, scheduler=None):
        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._tasks = {}
        self._shutdown_hook = False

    def register(self, key, name, func, minutes):
        if key in self._tasks:
            raise ValueError(f"task {key!r} already registered")
        self._tasks[key] = TaskDefinition(key, name, func, minutes)
        return self._tasks[key]

    def _get(self, key):
        try:
            return self._tasks[key]
        except KeyError:
            raise UnknownTask(key) from None

    def _ensure_running(self):
        if not self.scheduler.running:
            self.scheduler.start()

    def start(self, key):
        task = self._get(key)
        self._ensure_running()
        self.scheduler.add_job(
            func=task.func,
            trigger="interval",
            minutes=task.minutes,
            id=task.key,
            name=task.name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        task.is_active = True
        logger.info("Started task %s (%s), every %s min", task.name, key, task.minutes)
        return True

    def stop(self, key):
        task = self._get(key)
        try:
            self.scheduler.remove_job(key)
        except JobLookupError:
            logger.warning("Task %s was not scheduled", key)
        was_active = task.is_active
        task.is_active = False
        if was_active:
            logger.info("Stopped task %s (%s)", task.name, key)
        return was_active

    def restart(self, key):
        self.stop(key)
        return self.start(key)

    def start_all(self):
        for key in self._tasks:
            self.start(key)
        logger.info("Started %d scheduled tasks", len(self._tasks))

    def stop_all(self):
        for key in list(self._tasks):
            self.stop(key)

    def shutdown(self):
        self.stop_all()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Scheduled tasks shut down")

    def install_shutdown_hook(self):
        if not self._shutdown_hook:
            atexit.register(self.shutdown)
            self._shutdown_hook = True

    def status(self):
        out = []
        for key, task in self._tasks.items():
            job = self.scheduler.get_job(key) if task.is_active else None
            next_run = getattr(job, "next_run_time", None) if job else None
            out.append({
                "key": key,
                "name": task.name,
                "isActive": task.is_active,
                "intervalMinutes": task.minutes,
                "nextRunAt": next_run.isoformat() if next_run else None,
            })
        return out

    def health(self):
        tasks = self.status()
        active = sum(1 for t in tasks if t["isActive"])
        return {
            "status": "healthy" if active == len(tasks) else "degraded",
            "activeTasks": active,
            "totalTasks": len(tasks),
            "tasks": tasks,
            "lastCheck": datetime.utcnow().isoformat(),
        }
