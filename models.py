
import json
from datetime import datetime
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.types import TypeDecorator, TEXT
from sqlalchemy import UniqueConstraint, text
from werkzeug.security import generate_password_hash, check_password_hash


db = SQLAlchemy()

SEVERITY_RECENT = "RECENT"
SEVERITY_WARNING = "WARNING"
SEVERITY_CRITICAL = "CRITICAL"

def utcnow():
    return datetime.utcnow()

class JSONText(TypeDecorator):
    impl = TEXT
    cache_ok = True
    def process_bind_param(self, value, dialect):
        if value is None: return None
        return json.dumps(value, ensure_ascii=False)
    def process_result_value(self, value, dialect):
        if value is None: return None
        return json.loads(value)

class User(db.Model):
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    name = db.Column(db.String(120), nullable=False)
    role = db.Column(db.String(32), nullable=False, default="teacher")  # teacher, admin
    password_hash = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login  = db.Column(db.DateTime, nullable=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    @property
    def is_admin(self):
        return self.role == "admin"

class Student(db.Model):
    __tablename__ = 'students'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(255), unique=True, index=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False, default="")
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    last_login  = db.Column(db.DateTime, nullable=True)

    def set_password(self, pw): self.password_hash = generate_password_hash(pw)
    def check_password(self, pw): return check_password_hash(self.password_hash, pw)

    @property
    def display_name(self):
        return self.name or self.email

class SchoolClass(db.Model):
    __tablename__ = "classes"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    teacher_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), index=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    teacher = db.relationship('User')

class ClassMembership(db.Model):
    __tablename__ = "class_memberships"
    id = db.Column(db.Integer, primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    joined_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    school_class = db.relationship('SchoolClass', backref=db.backref('memberships', cascade="all,delete-orphan"))
    student = db.relationship('Student', backref=db.backref('memberships', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('class_id', 'student_id', name='uq_class_student'),
    )

class Assignment(db.Model):
    __tablename__ = "assignments"
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(255), nullable=False)
    due_at = db.Column(db.DateTime, nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    teacher_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="SET NULL"), index=True, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    teacher = db.relationship('User')

class AssignmentClass(db.Model):
    __tablename__ = "assignment_classes"
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete="CASCADE"), index=True, nullable=False)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), index=True, nullable=False)

    assignment = db.relationship('Assignment', backref=db.backref('class_links', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('assignment_id', 'class_id', name='uq_assignment_class'),
    )

class AssignmentStudent(db.Model):
    __tablename__ = "assignment_students"
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete="CASCADE"), index=True, nullable=False)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)

    assignment = db.relationship('Assignment', backref=db.backref('student_links', cascade="all,delete-orphan"))

    __table_args__ = (
        UniqueConstraint('assignment_id', 'student_id', name='uq_assignment_student'),
    )

class Question(db.Model):
    __tablename__ = "questions"
    id = db.Column(db.Integer, primary_key=True)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete="CASCADE"), index=True, nullable=False)
    order = db.Column(db.Integer, nullable=False, default=1)
    prompt = db.Column(db.Text, nullable=False)

    assignment = db.relationship('Assignment', backref=db.backref('questions', cascade="all,delete-orphan", order_by='Question.order'))

class StudentProgress(db.Model):
    __tablename__ = 'student_progress'
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete='CASCADE'), index=True, nullable=False)
    assignment_id = db.Column(db.Integer, db.ForeignKey('assignments.id', ondelete='CASCADE'), index=True, nullable=False)
    question_id = db.Column(db.Integer, db.ForeignKey('questions.id', ondelete='CASCADE'), index=True, nullable=False)

    is_complete = db.Column(db.Boolean, default=False, nullable=False)
    is_correct = db.Column(db.Boolean, default=False, nullable=False)
    attempts = db.Column(db.Integer, default=0, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    student = db.relationship('Student')
    question = db.relationship('Question')

    __table_args__ = (
        UniqueConstraint('student_id', 'question_id', name='uq_student_question'),
    )

class StudentStats(db.Model):
    __tablename__ = "student_stats"
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), primary_key=True)
    total_assignments = db.Column(db.Integer, default=0, nullable=False)
    completed_assignments = db.Column(db.Integer, default=0, nullable=False)
    total_answers = db.Column(db.Integer, default=0, nullable=False)
    total_correct_answers = db.Column(db.Integer, default=0, nullable=False)
    completion_rate = db.Column(db.Float, default=0.0, nullable=False)
    accuracy_rate = db.Column(db.Float, default=0.0, nullable=False)
    average_score = db.Column(db.Float, default=0.0, nullable=False)
    last_activity_at = db.Column(db.DateTime, nullable=True)
    last_updated = db.Column(db.DateTime, default=utcnow, nullable=False)

    student = db.relationship('Student', backref=db.backref('stats', uselist=False, cascade="all,delete-orphan"))

    def to_dict(self):
        return {
            "totalAssignments": self.total_assignments,
            "completedAssignments": self.completed_assignments,
            "completionRate": self.completion_rate,
            "averageScore": self.average_score,
            "accuracyRate": self.accuracy_rate,
            "totalAnswers": self.total_answers,
            "totalCorrectAnswers": self.total_correct_answers,
            "lastActivityAt": self.last_activity_at.isoformat() if self.last_activity_at else None,
            "lastUpdated": self.last_updated.isoformat() if self.last_updated else None,
        }

class StudentHelpRecord(db.Model):
    __tablename__ = "students_needing_help"
    id = db.Column(db.Integer, primary_key=True)
    student_id = db.Column(db.Integer, db.ForeignKey('students.id', ondelete="CASCADE"), index=True, nullable=False)
    reasons = db.Column(JSONText, nullable=False, default=list)
    needs_help_since = db.Column(db.DateTime, nullable=False)
    days_needing_help = db.Column(db.Integer, nullable=False, default=1)

    # Snapshot at last evaluation
    overdue_assignments = db.Column(db.Integer, nullable=False, default=0)
    average_score = db.Column(db.Float, nullable=False, default=0.0)
    completion_rate = db.Column(db.Float, nullable=False, default=0.0)
    severity = db.Column(db.String(16), nullable=False, default=SEVERITY_RECENT)  # RECENT|WARNING|CRITICAL

    is_resolved = db.Column(db.Boolean, nullable=False, default=False)
    resolved_at = db.Column(db.DateTime, nullable=True)

    teacher_notes = db.Column(db.Text, nullable=True)
    actions_taken = db.Column(JSONText, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    student = db.relationship('Student')
    class_links = db.relationship('HelpRecordClass', cascade="all,delete-orphan", backref='help_record')
    teacher_links = db.relationship('HelpRecordTeacher', cascade="all,delete-orphan", backref='help_record')

    # At most one unresolved record per student.
    __table_args__ = (
        db.Index(
            'uq_help_student_unresolved', 'student_id', unique=True,
            sqlite_where=text('is_resolved = 0'),
            postgresql_where=text('is_resolved = false'),
        ),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "studentId": self.student_id,
            "reasons": list(self.reasons or []),
            "needsHelpSince": self.needs_help_since.isoformat() if self.needs_help_since else None,
            "daysNeedingHelp": self.days_needing_help,
            "overdueAssignments": self.overdue_assignments,
            "averageScore": self.average_score,
            "completionRate": self.completion_rate,
            "severity": self.severity,
            "isResolved": self.is_resolved,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "teacherNotes": self.teacher_notes,
            "actionsTaken": list(self.actions_taken or []),
        }

class HelpRecordClass(db.Model):
    __tablename__ = "students_needing_help_classes"
    help_record_id = db.Column(db.Integer, db.ForeignKey('students_needing_help.id', ondelete="CASCADE"), primary_key=True)
    class_id = db.Column(db.Integer, db.ForeignKey('classes.id', ondelete="CASCADE"), primary_key=True)

    school_class = db.relationship('SchoolClass')

class HelpRecordTeacher(db.Model):
    __tablename__ = "students_needing_help_teachers"
    help_record_id = db.Column(db.Integer, db.ForeignKey('students_needing_help.id', ondelete="CASCADE"), primary_key=True)
    teacher_user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete="CASCADE"), primary_key=True)

    teacher = db.relationship('User')
