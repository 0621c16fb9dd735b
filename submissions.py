"""Answer submission: progress row, stats refresh and help re-evaluation."""

import logging

from models import StudentProgress, utcnow
from student_stats import refresh_student_stats

logger = logging.getLogger(__name__)


def record_answer(store, reconciler, student_id, question, is_correct, now=None):
    """
    Store a student's answer to `question` and re-evaluate their help status.

    The progress row and the stats refresh belong to the caller's
    transaction; the reconciler reuses that fresh stats row. The help
    reconciliation runs in a SAVEPOINT, so a failure there does not lose
    the answer; it is reported in the returned ReconcileResult instead.
    Caller commits.
    """
    now = now or utcnow()
    progress = (store.session.query(StudentProgress)
                .filter_by(student_id=student_id, question_id=question.id)
                .one_or_none())
    if progress is None:
        progress = StudentProgress(student_id=student_id, assignment_id=question.assignment_id,
                                   question_id=question.id, created_at=now)
        store.session.add(progress)
    progress.is_complete = True
    progress.is_correct = bool(is_correct)
    progress.attempts = (progress.attempts or 0) + 1
    progress.updated_at = now
    store.session.flush()

    refresh_student_stats(store, student_id, now=now)

    teacher_user_id = question.assignment.teacher_user_id if question.assignment else None
    result = reconciler.reconcile_student(student_id, now=now, teacher_user_id=teacher_user_id,
                                          nested=True, refresh_stats=False)
    if not result.ok:
        logger.warning("Help status not updated after answer by student %s: %s", student_id, result.reason)
    return progress, result
