import os
from datetime import datetime, timedelta

import pytest

# app.py builds a module-level app on import; keep it off the real database.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("APP_SECRET", "test-secret")

from app import create_app  # noqa: E402
from models import (  # noqa: E402
    db, User, Student, SchoolClass, ClassMembership, Assignment, AssignmentClass,
    AssignmentStudent, Question, StudentProgress,
)

NOW = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture
def app():
    app = create_app("sqlite://", start_scheduler=False)
    app.config["TESTING"] = True
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()
    app.extensions["task_supervisor"].shutdown()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


class Factory:
    def __init__(self, session):
        self.session = session
        self._n = 0

    def _next(self):
        self._n += 1
        return self._n

    def user(self, name="Tess Teacher", role="teacher", password="pw"):
        n = self._next()
        u = User(name=name, email=f"user{n}@school.test", role=role)
        u.set_password(password)
        self.session.add(u)
        self.session.flush()
        return u

    def student(self, name="Stu Dent", password="pw"):
        n = self._next()
        s = Student(name=name, email=f"student{n}@school.test")
        s.set_password(password)
        self.session.add(s)
        self.session.flush()
        return s

    def school_class(self, teacher=None, students=(), name="Algebra"):
        c = SchoolClass(name=name, teacher_user_id=teacher.id if teacher else None)
        self.session.add(c)
        self.session.flush()
        for s in students:
            self.session.add(ClassMembership(class_id=c.id, student_id=s.id))
        self.session.flush()
        return c

    def assignment(self, school_class=None, students=(), teacher=None, questions=2,
                   due_at=None, is_active=True, title="Homework"):
        a = Assignment(title=title, due_at=due_at, is_active=is_active,
                       teacher_user_id=teacher.id if teacher else None)
        self.session.add(a)
        self.session.flush()
        if school_class is not None:
            self.session.add(AssignmentClass(assignment_id=a.id, class_id=school_class.id))
        for s in students:
            self.session.add(AssignmentStudent(assignment_id=a.id, student_id=s.id))
        for i in range(questions):
            self.session.add(Question(assignment_id=a.id, order=i + 1, prompt=f"Q{i + 1}"))
        self.session.flush()
        self.session.refresh(a)
        return a

    def answer(self, student, question, correct=True, when=NOW):
        p = StudentProgress(student_id=student.id, assignment_id=question.assignment_id,
                            question_id=question.id, is_complete=True, is_correct=correct,
                            attempts=1, created_at=when, updated_at=when)
        self.session.add(p)
        self.session.flush()
        return p

    def complete(self, student, assignment, correct=True, when=NOW):
        for q in assignment.questions:
            self.answer(student, q, correct=correct, when=when)


@pytest.fixture
def make(session):
    return Factory(session)


@pytest.fixture
def past_due():
    return NOW - timedelta(days=2)
