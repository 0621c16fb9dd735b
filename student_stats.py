"""Per-student statistics aggregate.

The reconciler reads completion rate and average score from `student_stats`.
These helpers recompute a row from the raw assignment / progress tables.
"""

import logging
from collections import defaultdict

from models import utcnow

logger = logging.getLogger(__name__)


def _pct(part, whole):
    return round((part / whole) * 100.0, 2) if whole else 0.0


def compute_student_stats(assignments, progresses):
    """
    Aggregate figures for one student.

    An assignment counts as completed once it has at least one question and
    every question has a completed progress row. The average score is the
    mean of per-assignment scores over completed assignments only.
    """
    completed_by_assignment = defaultdict(dict)
    for p in progresses:
        if p.is_complete:
            completed_by_assignment[p.assignment_id][p.question_id] = bool(p.is_correct)

    completed = 0
    scores = []
    for a in assignments:
        question_ids = [q.id for q in a.questions]
        if not question_ids:
            continue
        answered = completed_by_assignment.get(a.id, {})
        if all(qid in answered for qid in question_ids):
            completed += 1
            correct = sum(1 for qid in question_ids if answered[qid])
            scores.append(correct / len(question_ids) * 100.0)

    answers = [p for p in progresses if p.is_complete]
    correct_answers = sum(1 for p in answers if p.is_correct)
    last_activity = max((p.updated_at for p in progresses if p.updated_at), default=None)

    return {
        "total_assignments": len(assignments),
        "completed_assignments": completed,
        "completion_rate": _pct(completed, len(assignments)),
        "average_score": round(sum(scores) / len(scores), 2) if scores else 0.0,
        "total_answers": len(answers),
        "total_correct_answers": correct_answers,
        "accuracy_rate": _pct(correct_answers, len(answers)),
        "last_activity_at": last_activity,
    }


def refresh_student_stats(store, student_id, now=None):
    """Recompute and store the stats row for one student. Caller commits."""
    assignments = store.assignments_for_student(student_id)
    progresses = store.progress_for_student(student_id, [a.id for a in assignments])
    figures = compute_student_stats(assignments, progresses)

    stats = store.get_or_create_stats(student_id)
    for field, value in figures.items():
        setattr(stats, field, value)
    stats.last_updated = now or utcnow()
    return stats


def refresh_all_stats(store, now=None):
    """Recompute stats for the whole roster. Returns (refreshed, errors)."""
    refreshed = 0
    errors = []
    for student in store.list_students():
        try:
            with store.transaction():
                refresh_student_stats(store, student.id, now=now)
            refreshed += 1
        except Exception as e:
            logger.exception("Stats refresh failed for student %s", student.id)
            errors.append(f"{student.display_name}: {e}")
    return refreshed, errors
