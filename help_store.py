"""Data access for the help-status reconciler.

`HelpStore` is the only thing the reconciler talks to: it reads the roster,
statistics and assignment progress, and writes help records and their links.
One instance wraps one SQLAlchemy session.
"""

from contextlib import contextmanager
from typing import List, Optional

from sqlalchemy import select, exists, or_, func

from models import (
    db, Student, SchoolClass, ClassMembership, Assignment, AssignmentClass,
    AssignmentStudent, Question, StudentProgress, StudentStats,
    StudentHelpRecord, HelpRecordClass, HelpRecordTeacher,
)


class HelpStore:
    def __init__(self, session=None):
        self.session = session or db.session

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self, nested=False):
        """
        Unit of work for one student's writes.

        nested=False commits on success and rolls back on error.
        nested=True opens a SAVEPOINT inside the caller's transaction; only
        the work inside the block is rolled back on error and the caller
        stays responsible for the final commit.
        """
        if nested:
            with self.session.begin_nested():
                yield self
            return
        try:
            yield self
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Roster / classes
    # ------------------------------------------------------------------
    def list_students(self) -> List[Student]:
        return self.session.query(Student).order_by(Student.id.asc()).all()

    def get_student(self, student_id) -> Optional[Student]:
        return self.session.get(Student, student_id)

    def class_ids_for_student(self, student_id) -> List[int]:
        rows = (self.session.query(ClassMembership.class_id)
                .filter(ClassMembership.student_id == student_id)
                .order_by(ClassMembership.class_id.asc())
                .all())
        return [r[0] for r in rows]

    # ------------------------------------------------------------------
    # Assignments / progress
    # ------------------------------------------------------------------
    def _reaches_student(self, student_id):
        via_class = (select(AssignmentClass.assignment_id)
                     .join(ClassMembership, ClassMembership.class_id == AssignmentClass.class_id)
                     .where(ClassMembership.student_id == student_id))
        direct = (select(AssignmentStudent.assignment_id)
                  .where(AssignmentStudent.student_id == student_id))
        return or_(Assignment.id.in_(via_class), Assignment.id.in_(direct))

    def assignments_for_student(self, student_id) -> List[Assignment]:
        """Active assignments reaching the student by class or directly."""
        return (self.session.query(Assignment)
                .filter(Assignment.is_active.is_(True), self._reaches_student(student_id))
                .order_by(Assignment.id.asc())
                .all())

    def progress_for_student(self, student_id, assignment_ids) -> List[StudentProgress]:
        if not assignment_ids:
            return []
        return (self.session.query(StudentProgress)
                .filter(StudentProgress.student_id == student_id,
                        StudentProgress.assignment_id.in_(assignment_ids))
                .all())

    def count_overdue_assignments(self, student_id, now) -> int:
        """
        Assignments past due that the student has not finished.

        An assignment is finished when every one of its questions has a
        completed progress row for the student; one with no questions is
        therefore never counted.
        """
        answered = exists().where(
            StudentProgress.question_id == Question.id,
            StudentProgress.student_id == student_id,
            StudentProgress.is_complete.is_(True),
        )
        unanswered_question = exists().where(
            Question.assignment_id == Assignment.id,
            ~answered,
        )
        count = (self.session.query(func.count(Assignment.id))
                 .filter(Assignment.is_active.is_(True),
                         Assignment.due_at.isnot(None),
                         Assignment.due_at < now,
                         self._reaches_student(student_id),
                         unanswered_question)
                 .scalar())
        return int(count or 0)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------
    def get_stats(self, student_id) -> Optional[StudentStats]:
        return self.session.get(StudentStats, student_id)

    def get_or_create_stats(self, student_id) -> StudentStats:
        stats = self.get_stats(student_id)
        if stats is None:
            stats = StudentStats(student_id=student_id)
            self.session.add(stats)
        return stats

    # ------------------------------------------------------------------
    # Help records
    # ------------------------------------------------------------------
    def find_unresolved(self, student_id) -> Optional[StudentHelpRecord]:
        return (self.session.query(StudentHelpRecord)
                .filter(StudentHelpRecord.student_id == student_id,
                        StudentHelpRecord.is_resolved.is_(False))
                .first())

    def add_help_record(self, record: StudentHelpRecord) -> StudentHelpRecord:
        self.session.add(record)
        self.session.flush()
        return record

    def link_classes(self, record: StudentHelpRecord, class_ids):
        for class_id in class_ids:
            record.class_links.append(HelpRecordClass(class_id=class_id))

    def link_teacher(self, record: StudentHelpRecord, teacher_user_id):
        if any(link.teacher_user_id == teacher_user_id for link in record.teacher_links):
            return
        record.teacher_links.append(HelpRecordTeacher(teacher_user_id=teacher_user_id))

    def delete_help_record(self, record: StudentHelpRecord):
        self.session.delete(record)

    def count_unresolved(self) -> int:
        return (self.session.query(func.count(StudentHelpRecord.id))
                .filter(StudentHelpRecord.is_resolved.is_(False))
                .scalar()) or 0

    def owned_class_ids(self, teacher_user_id) -> List[int]:
        rows = (self.session.query(SchoolClass.id)
                .filter(SchoolClass.teacher_user_id == teacher_user_id)
                .all())
        return [r[0] for r in rows]
