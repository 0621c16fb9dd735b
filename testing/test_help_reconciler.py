from datetime import timedelta

import pytest

from app import create_app
from conftest import NOW, Factory
from help_reconciler import (
    HelpReconciler, HelpPolicy, BatchAlreadyRunning,
    ACTION_CREATED, ACTION_UPDATED, ACTION_RESOLVED, ACTION_DELETED, ACTION_SKIPPED,
    ACTION_UNCHANGED, RESOLUTION_DELETE,
)
from help_rules import REASON_LOW_COMPLETION, REASON_LOW_SCORE, SEVERITY_POLICY_FIXED
from help_store import HelpStore
from models import (
    db, StudentHelpRecord, StudentStats, SEVERITY_RECENT, SEVERITY_WARNING, SEVERITY_CRITICAL,
)


@pytest.fixture
def reconciler():
    return HelpReconciler(clock=lambda: NOW)


@pytest.fixture
def struggling(session, make, past_due):
    """A student with one overdue, untouched assignment in a teacher's class."""
    teacher = make.user()
    s = make.student(name="Sally Struggles")
    c = make.school_class(teacher=teacher, students=[s])
    a = make.assignment(school_class=c, teacher=teacher, due_at=past_due)
    session.commit()
    return s, c, a


def records_for(session, student):
    return session.query(StudentHelpRecord).filter_by(student_id=student.id).order_by(StudentHelpRecord.id).all()


def test_creates_record_with_reasons_and_class_links(session, reconciler, struggling):
    s, c, _ = struggling
    result = reconciler.reconcile_student(s.id, now=NOW)

    assert result.ok and result.action == ACTION_CREATED and result.needs_help
    (record,) = records_for(session, s)
    assert record.reasons == [REASON_LOW_COMPLETION, REASON_LOW_SCORE, "1 overdue assignment"]
    assert record.needs_help_since == NOW
    assert record.days_needing_help == 1
    assert record.severity == SEVERITY_RECENT
    assert record.overdue_assignments == 1
    assert record.is_resolved is False
    assert [link.class_id for link in record.class_links] == [c.id]
    assert record.teacher_links == []


def test_batch_is_idempotent(session, reconciler, struggling):
    s, _, _ = struggling
    reconciler.run_batch(now=NOW)
    first = records_for(session, s)[0]
    since, days = first.needs_help_since, first.days_needing_help

    summary = reconciler.run_batch(now=NOW)

    records = records_for(session, s)
    assert len(records) == 1
    assert records[0].needs_help_since == since
    assert records[0].days_needing_help == days
    assert summary.currently_needing_help == 1
    assert summary.students_processed == summary.total_students == 1


def test_update_grows_days_and_severity(session, reconciler, struggling):
    s, _, _ = struggling
    reconciler.reconcile_student(s.id, now=NOW)

    result = reconciler.reconcile_student(s.id, now=NOW + timedelta(days=9))
    assert result.action == ACTION_UPDATED
    record = records_for(session, s)[0]
    assert record.needs_help_since == NOW
    assert record.days_needing_help == 9
    assert record.severity == SEVERITY_WARNING

    reconciler.reconcile_student(s.id, now=NOW + timedelta(days=15))
    assert records_for(session, s)[0].severity == SEVERITY_CRITICAL


def test_days_never_decrease(session, reconciler, struggling):
    s, _, _ = struggling
    reconciler.reconcile_student(s.id, now=NOW)
    reconciler.reconcile_student(s.id, now=NOW + timedelta(days=5))
    reconciler.reconcile_student(s.id, now=NOW + timedelta(days=2))
    assert records_for(session, s)[0].days_needing_help == 5


def test_fixed_severity_policy(session, struggling):
    s, _, _ = struggling
    reconciler = HelpReconciler(policy=HelpPolicy(severity_policy=SEVERITY_POLICY_FIXED))
    reconciler.reconcile_student(s.id, now=NOW)
    reconciler.reconcile_student(s.id, now=NOW + timedelta(days=20))
    record = records_for(session, s)[0]
    assert record.days_needing_help == 20
    assert record.severity == SEVERITY_RECENT


def test_recovery_resolves_record(session, make, reconciler, struggling):
    s, _, a = struggling
    reconciler.reconcile_student(s.id, now=NOW)
    make.complete(s, a, correct=True)
    session.commit()

    later = NOW + timedelta(days=1)
    result = reconciler.reconcile_student(s.id, now=later)

    assert result.action == ACTION_RESOLVED and not result.needs_help
    (record,) = records_for(session, s)
    assert record.is_resolved is True
    assert record.resolved_at == later
    assert HelpStore().find_unresolved(s.id) is None


def test_recovery_deletes_record_in_delete_mode(session, make, struggling):
    s, _, a = struggling
    reconciler = HelpReconciler(policy=HelpPolicy(resolution_mode=RESOLUTION_DELETE))
    reconciler.reconcile_student(s.id, now=NOW)
    make.complete(s, a, correct=True)
    session.commit()

    result = reconciler.reconcile_student(s.id, now=NOW)
    assert result.action == ACTION_DELETED
    assert records_for(session, s) == []


def test_new_episode_starts_at_day_one(session, make, reconciler, struggling, past_due):
    s, c, a = struggling
    reconciler.reconcile_student(s.id, now=NOW)
    make.complete(s, a, correct=True)
    session.commit()
    reconciler.reconcile_student(s.id, now=NOW + timedelta(days=10))

    make.assignment(school_class=c, due_at=past_due)
    make.assignment(school_class=c, due_at=past_due)
    session.commit()
    relapse = NOW + timedelta(days=20)
    result = reconciler.reconcile_student(s.id, now=relapse)

    assert result.action == ACTION_CREATED
    old, new = records_for(session, s)
    assert old.is_resolved is True
    assert new.is_resolved is False
    assert new.needs_help_since == relapse
    assert new.days_needing_help == 1
    assert new.reasons == [REASON_LOW_COMPLETION, "2 overdue assignments"]


def test_zero_assignments_leaves_existing_record_alone(session, make, reconciler):
    s = make.student()
    record = StudentHelpRecord(student_id=s.id, reasons=["Low average score"],
                               needs_help_since=NOW - timedelta(days=3), days_needing_help=3,
                               average_score=0.0, completion_rate=0.0, severity=SEVERITY_RECENT)
    session.add(record)
    session.commit()

    result = reconciler.reconcile_student(s.id, now=NOW + timedelta(days=30))

    assert result.action == ACTION_SKIPPED
    session.refresh(record)
    assert record.is_resolved is False
    assert record.days_needing_help == 3
    assert record.reasons == ["Low average score"]


def test_zero_assignments_creates_nothing(session, make, reconciler):
    s = make.student()
    session.commit()
    reconciler.run_batch(now=NOW)
    assert records_for(session, s) == []


def test_healthy_student_without_record_is_unchanged(session, make, reconciler):
    s = make.student()
    a = make.assignment(students=[s], due_at=NOW - timedelta(days=1))
    make.complete(s, a, correct=True)
    session.commit()

    result = reconciler.reconcile_student(s.id, now=NOW)
    assert result.action == ACTION_UNCHANGED
    assert records_for(session, s) == []


class FailingStore(HelpStore):
    def __init__(self, bad_student_id):
        super().__init__()
        self.bad_student_id = bad_student_id

    def count_overdue_assignments(self, student_id, now):
        if student_id == self.bad_student_id:
            raise RuntimeError("boom")
        return super().count_overdue_assignments(student_id, now)


def test_one_failing_student_does_not_stop_batch(session, make, struggling, past_due):
    s, c, _ = struggling
    bad = make.student(name="Bad Data")
    other = make.student(name="Other Kid")
    make.assignment(students=[bad, other], due_at=past_due)
    session.commit()
    bad_id = bad.id

    reconciler = HelpReconciler(store_factory=lambda: FailingStore(bad_id))
    summary = reconciler.run_batch(now=NOW)

    assert summary.total_students == 3
    assert summary.students_processed == 2
    assert summary.errors == ["Bad Data: boom"]
    assert summary.currently_needing_help == 2
    assert HelpStore().find_unresolved(bad_id) is None


def test_roster_failure_propagates(session):
    class BrokenStore(HelpStore):
        def list_students(self):
            raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError, match="database unavailable"):
        HelpReconciler(store_factory=BrokenStore).run_batch(now=NOW)


def test_overlapping_batch_is_rejected(session, reconciler):
    assert reconciler._batch_lock.acquire(blocking=False)
    try:
        with pytest.raises(BatchAlreadyRunning):
            reconciler.run_batch(now=NOW)
    finally:
        reconciler._batch_lock.release()
    reconciler.run_batch(now=NOW)


def test_missing_stats_reported_when_refresh_disabled(session, struggling):
    s, _, _ = struggling
    reconciler = HelpReconciler(policy=HelpPolicy(refresh_stats=False))
    result = reconciler.reconcile_student(s.id, now=NOW)
    assert result.ok is False
    assert "missing student stats" in result.reason
    assert records_for(session, s) == []


def test_uses_stored_stats_when_refresh_disabled(session, struggling):
    s, _, _ = struggling
    session.add(StudentStats(student_id=s.id, total_assignments=3, completed_assignments=3,
                             completion_rate=90.0, average_score=90.0))
    session.commit()

    reconciler = HelpReconciler(policy=HelpPolicy(refresh_stats=False))
    result = reconciler.reconcile_student(s.id, now=NOW)
    assert result.action == ACTION_CREATED
    assert records_for(session, s)[0].reasons == ["1 overdue assignment"]


def test_policy_from_config():
    policy = HelpPolicy.from_config({"HELP_RESOLUTION_MODE": "delete", "HELP_SEVERITY_POLICY": "fixed",
                                     "HELP_MAX_WORKERS": "4", "HELP_REFRESH_STATS": "0"})
    assert policy.resolution_mode == RESOLUTION_DELETE
    assert policy.severity_policy == SEVERITY_POLICY_FIXED
    assert policy.max_workers == 4
    assert policy.refresh_stats is False
    with pytest.raises(ValueError):
        HelpPolicy(resolution_mode="archive")


@pytest.fixture
def file_app(tmp_path):
    app = create_app(f"sqlite:///{tmp_path / 'help.db'}", start_scheduler=False)
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    app.extensions["task_supervisor"].shutdown()


def test_parallel_batch_matches_sequential(file_app, past_due):
    make = Factory(db.session)
    students = [make.student(name=f"Kid {i}") for i in range(8)]
    c = make.school_class(students=students)
    make.assignment(school_class=c, due_at=past_due)
    db.session.commit()

    reconciler = HelpReconciler(policy=HelpPolicy(max_workers=4), app=file_app)
    for _ in range(2):
        summary = reconciler.run_batch(now=NOW)
        assert summary.errors == []
        assert summary.students_processed == 8
        assert summary.currently_needing_help == 8

    db.session.expire_all()
    for s in students:
        (record,) = records_for(db.session, s)
        assert record.needs_help_since == NOW
        assert record.days_needing_help == 1
