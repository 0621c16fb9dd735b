"""Students-needing-help reconciliation.

For each student the reconciler compares the current statistics and overdue
count against the thresholds in `help_rules` and applies the smallest
create / update / resolve / delete to that student's help record.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from help_rules import (
    evaluate, is_recovered, days_needing_help, severity_for,
    SEVERITY_POLICY_ELAPSED, SEVERITY_POLICIES,
)
from help_store import HelpStore
from models import StudentHelpRecord, utcnow
from student_stats import refresh_student_stats

logger = logging.getLogger(__name__)

RESOLUTION_RESOLVE = "resolve"
RESOLUTION_DELETE = "delete"
RESOLUTION_MODES = (RESOLUTION_RESOLVE, RESOLUTION_DELETE)

ACTION_CREATED = "created"
ACTION_UPDATED = "updated"
ACTION_RESOLVED = "resolved"
ACTION_DELETED = "deleted"
ACTION_UNCHANGED = "unchanged"
ACTION_SKIPPED = "skipped"


class BatchAlreadyRunning(RuntimeError):
    pass


class MissingStudentStats(LookupError):
    pass


def _truthy(value):
    return str(value).strip().lower() in ("1", "true", "yes", "on")


class HelpPolicy:
    """Settings that pick between the supported reconciliation variants."""

    def __init__(self, resolution_mode=RESOLUTION_RESOLVE, severity_policy=SEVERITY_POLICY_ELAPSED,
                 max_workers=1, refresh_stats=True):
        if resolution_mode not in RESOLUTION_MODES:
            raise ValueError(f"unknown resolution mode: {resolution_mode!r}")
        if severity_policy not in SEVERITY_POLICIES:
            raise ValueError(f"unknown severity policy: {severity_policy!r}")
        self.resolution_mode = resolution_mode
        self.severity_policy = severity_policy
        self.max_workers = max(1, int(max_workers))
        self.refresh_stats = bool(refresh_stats)

    @classmethod
    def from_config(cls, config):
        return cls(
            resolution_mode=config.get("HELP_RESOLUTION_MODE", RESOLUTION_RESOLVE),
            severity_policy=config.get("HELP_SEVERITY_POLICY", SEVERITY_POLICY_ELAPSED),
            max_workers=config.get("HELP_MAX_WORKERS", 1),
            refresh_stats=_truthy(config.get("HELP_REFRESH_STATS", "1")),
        )


class ReconcileResult:
    """Outcome of reconciling one student."""

    def __init__(self, student_id, ok, action=None, needs_help=False, reason=None):
        self.student_id = student_id
        self.ok = ok
        self.action = action
        self.needs_help = needs_help
        self.reason = reason

    @classmethod
    def done(cls, student_id, action, needs_help=False):
        return cls(student_id, True, action=action, needs_help=needs_help)

    @classmethod
    def failed(cls, student_id, reason):
        return cls(student_id, False, reason=reason)

    def to_dict(self):
        d = {"ok": self.ok, "action": self.action, "needsHelp": self.needs_help}
        if not self.ok:
            d["reason"] = self.reason
        return d

    def __repr__(self):
        state = self.action if self.ok else f"failed: {self.reason}"
        return f"<ReconcileResult student={self.student_id} {state}>"


class BatchSummary:
    def __init__(self, total_students=0, started_at=None):
        self.total_students = total_students
        self.students_processed = 0
        self.currently_needing_help = 0
        self.errors = []
        self.started_at = started_at
        self.finished_at = None

    def to_dict(self):
        return {
            "studentsProcessed": self.students_processed,
            "currentlyNeedingHelp": self.currently_needing_help,
            "totalStudents": self.total_students,
            "errors": list(self.errors),
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
        }


class HelpReconciler:
    def __init__(self, policy=None, store_factory=HelpStore, app=None, clock=utcnow):
        self.policy = policy or HelpPolicy()
        self.store_factory = store_factory
        self.app = app
        self.clock = clock
        self._batch_lock = threading.Lock()

    # ------------------------------------------------------------------
    # One student
    # ------------------------------------------------------------------
    def reconcile_student(self, student_id, now=None, teacher_user_id=None, nested=False, refresh_stats=None):
        """
        Reconcile one student's help record inside its own transaction.

        teacher_user_id is set when the evaluation comes from an assignment
        submission; a newly created record is then linked to that teacher.
        With nested=True the writes run in a SAVEPOINT of the caller's
        transaction. refresh_stats overrides the policy for callers that
        have already refreshed the stats row in this transaction. Errors
        never escape: they roll back this student's writes and come back
        as a failed result.
        """
        now = now or self.clock()
        if refresh_stats is None:
            refresh_stats = self.policy.refresh_stats
        store = self.store_factory()
        try:
            with store.transaction(nested=nested):
                return self._apply(store, student_id, now, teacher_user_id, refresh_stats)
        except Exception as e:
            logger.exception("Help reconciliation failed for student %s", student_id)
            return ReconcileResult.failed(student_id, str(e) or e.__class__.__name__)

    def _apply(self, store, student_id, now, teacher_user_id, refresh_stats):
        if refresh_stats:
            stats = refresh_student_stats(store, student_id, now=now)
        else:
            stats = store.get_stats(student_id)
            if stats is None:
                raise MissingStudentStats(f"missing student stats for student {student_id}")

        if not stats.total_assignments:
            return ReconcileResult.done(student_id, ACTION_SKIPPED)

        overdue = store.count_overdue_assignments(student_id, now)
        evaluation = evaluate(stats.total_assignments, stats.completion_rate,
                              stats.average_score, overdue)
        record = store.find_unresolved(student_id)

        if evaluation.needs_help:
            if record is None:
                self._create(store, student_id, evaluation.reasons, stats, overdue, now, teacher_user_id)
                return ReconcileResult.done(student_id, ACTION_CREATED, needs_help=True)
            self._update(record, evaluation.reasons, stats, overdue, now)
            return ReconcileResult.done(student_id, ACTION_UPDATED, needs_help=True)

        if record is None or not is_recovered(stats.completion_rate, stats.average_score, overdue):
            return ReconcileResult.done(student_id, ACTION_UNCHANGED)

        if self.policy.resolution_mode == RESOLUTION_DELETE:
            store.delete_help_record(record)
            logger.info("Help record %s deleted, student %s recovered", record.id, student_id)
            return ReconcileResult.done(student_id, ACTION_DELETED)

        record.is_resolved = True
        record.resolved_at = now
        record.updated_at = now
        logger.info("Help record %s resolved, student %s recovered", record.id, student_id)
        return ReconcileResult.done(student_id, ACTION_RESOLVED)

    def _snapshot(self, record, reasons, stats, overdue):
        record.reasons = list(reasons)
        record.overdue_assignments = overdue
        record.average_score = stats.average_score
        record.completion_rate = stats.completion_rate

    def _create(self, store, student_id, reasons, stats, overdue, now, teacher_user_id):
        record = StudentHelpRecord(
            student_id=student_id,
            needs_help_since=now,
            days_needing_help=1,
            severity=severity_for(1, self.policy.severity_policy),
            is_resolved=False,
            created_at=now,
            updated_at=now,
        )
        self._snapshot(record, reasons, stats, overdue)
        store.add_help_record(record)
        store.link_classes(record, store.class_ids_for_student(student_id))
        if teacher_user_id:
            store.link_teacher(record, teacher_user_id)
        logger.info("Help record %s created for student %s: %s",
                    record.id, student_id, ", ".join(reasons))
        return record

    def _update(self, record, reasons, stats, overdue, now):
        days = days_needing_help(record.needs_help_since, now)
        # Never move backwards within one episode.
        days = max(days, record.days_needing_help or 1)
        self._snapshot(record, reasons, stats, overdue)
        record.days_needing_help = days
        record.severity = severity_for(days, self.policy.severity_policy)
        record.is_resolved = False
        record.resolved_at = None
        record.updated_at = now
        return record

    # ------------------------------------------------------------------
    # Whole roster
    # ------------------------------------------------------------------
    def run_batch(self, now=None):
        """
        Reconcile every student once.

        Per-student failures are collected in the summary's `errors`.
        A failure to read the roster propagates to the caller. Raises
        BatchAlreadyRunning when another run holds the lock.
        """
        if not self._batch_lock.acquire(blocking=False):
            raise BatchAlreadyRunning("students-needing-help analysis is already running")
        try:
            return self._run_batch(now or self.clock())
        finally:
            self._batch_lock.release()

    def _run_batch(self, now):
        store = self.store_factory()
        roster = [(s.id, s.display_name) for s in store.list_students()]
        summary = BatchSummary(total_students=len(roster), started_at=now)
        logger.info("Analyzing %d students for help status", len(roster))

        if self.policy.max_workers > 1 and self.app is not None and len(roster) > 1:
            with ThreadPoolExecutor(max_workers=self.policy.max_workers) as pool:
                results = list(pool.map(lambda sid: self._reconcile_in_context(sid, now),
                                        [sid for sid, _ in roster]))
        else:
            results = [self.reconcile_student(sid, now=now) for sid, _ in roster]

        names = dict(roster)
        for result in results:
            if result.ok:
                summary.students_processed += 1
            else:
                summary.errors.append(f"{names.get(result.student_id, result.student_id)}: {result.reason}")

        summary.currently_needing_help = self.store_factory().count_unresolved()
        summary.finished_at = self.clock()
        logger.info("Help analysis done: %d processed, %d needing help, %d errors",
                    summary.students_processed, summary.currently_needing_help, len(summary.errors))
        return summary

    def _reconcile_in_context(self, student_id, now):
        with self.app.app_context():
            return self.reconcile_student(student_id, now=now)
