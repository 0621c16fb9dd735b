# scripts/dev_seed.py
from datetime import datetime, timedelta

from app import create_app
from models import (
    db, User, Student, SchoolClass, ClassMembership, Assignment, AssignmentClass, Question,
)

def upsert_user(name, email, role, password):
    u = User.query.filter_by(email=email).one_or_none()
    if u is None:
        u = User(name=name, email=email, role=role, created_at=datetime.utcnow())
        u.set_password(password)
        db.session.add(u)
        print(f"[seed] created {role} user: {email}")
    else:
        print(f"[seed] {role} user already exists: {email}")
    return u

def upsert_student(name, email, password):
    s = Student.query.filter_by(email=email).one_or_none()
    if s is None:
        s = Student(name=name, email=email, created_at=datetime.utcnow())
        s.set_password(password)
        db.session.add(s)
        print(f"[seed] created student: {email}")
    else:
        print(f"[seed] student already exists: {email}")
    return s

def upsert_class(name, teacher, students):
    c = SchoolClass.query.filter_by(name=name).one_or_none()
    if c is None:
        c = SchoolClass(name=name, teacher=teacher)
        db.session.add(c)
        db.session.flush()
        print(f"[seed] created class: {name}")
    have = {m.student_id for m in c.memberships}
    for s in students:
        if s.id not in have:
            db.session.add(ClassMembership(class_id=c.id, student_id=s.id))
    return c

def upsert_assignment(title, teacher, school_class, due_at, n_questions=3):
    a = Assignment.query.filter_by(title=title).one_or_none()
    if a is None:
        a = Assignment(title=title, teacher=teacher, due_at=due_at)
        db.session.add(a)
        db.session.flush()
        db.session.add(AssignmentClass(assignment_id=a.id, class_id=school_class.id))
        for i in range(1, n_questions + 1):
            db.session.add(Question(assignment_id=a.id, order=i, prompt=f"{title}: question {i}"))
        print(f"[seed] created assignment: {title}")
    return a

def main():
    app = create_app(start_scheduler=False)
    with app.app_context():
        db.create_all()   # safe if tables already exist

        admin   = upsert_user("Alice Admin",   "admin@example.com",   "admin",   "admin123")
        teacher = upsert_user("Tom Teacher",   "teacher@example.com", "teacher", "teacher123")
        s1 = upsert_student("Stu Dent",   "student@example.com",  "student123")
        s2 = upsert_student("Sam Slow",   "student2@example.com", "student123")
        db.session.flush()

        c = upsert_class("Algebra 1", teacher, [s1, s2])
        now = datetime.utcnow()
        upsert_assignment("Linear equations", teacher, c, now - timedelta(days=3))
        upsert_assignment("Quadratics", teacher, c, now + timedelta(days=7))

        db.session.commit()
        print(f"[seed] done. admin={admin.email} teacher={teacher.email}")

if __name__ == "__main__":
    main()
