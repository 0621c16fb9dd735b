"""Read side of the students-needing-help feature (teacher/admin views)."""

from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from models import (
    db, StudentHelpRecord, HelpRecordClass, HelpRecordTeacher, SchoolClass, ClassMembership,
    SEVERITY_CRITICAL, SEVERITY_WARNING, SEVERITY_RECENT, utcnow,
)
from help_store import HelpStore


def _decorate(record):
    d = record.to_dict()
    st = record.student
    d["student"] = {"id": st.id, "name": st.name, "email": st.email} if st else None
    d["classes"] = [
        {"id": link.school_class.id, "name": link.school_class.name}
        for link in record.class_links if link.school_class is not None
    ]
    d["teachers"] = [
        {"id": link.teacher.id, "name": link.teacher.name}
        for link in record.teacher_links if link.teacher is not None
    ]
    return d


def list_unresolved(viewer, session=None):
    """
    Unresolved help records visible to `viewer`, most days first.

    Admins see everything. A teacher sees records linked to a class they
    own or linked to them directly.
    """
    session = session or db.session
    q = (session.query(StudentHelpRecord)
         .options(selectinload(StudentHelpRecord.student),
                  selectinload(StudentHelpRecord.class_links).selectinload(HelpRecordClass.school_class),
                  selectinload(StudentHelpRecord.teacher_links).selectinload(HelpRecordTeacher.teacher))
         .filter(StudentHelpRecord.is_resolved.is_(False)))

    if not viewer.is_admin:
        owned = session.query(SchoolClass.id).filter(SchoolClass.teacher_user_id == viewer.id)
        by_class = (session.query(HelpRecordClass.help_record_id)
                    .filter(HelpRecordClass.class_id.in_(owned.scalar_subquery())))
        by_teacher = (session.query(HelpRecordTeacher.help_record_id)
                      .filter(HelpRecordTeacher.teacher_user_id == viewer.id))
        q = q.filter(or_(StudentHelpRecord.id.in_(by_class.scalar_subquery()),
                         StudentHelpRecord.id.in_(by_teacher.scalar_subquery())))

    records = q.order_by(StudentHelpRecord.days_needing_help.desc(), StudentHelpRecord.id.asc()).all()
    return [_decorate(r) for r in records]


def summarize(items):
    return {
        "total": len(items),
        "critical": sum(1 for i in items if i["severity"] == SEVERITY_CRITICAL),
        "warning": sum(1 for i in items if i["severity"] == SEVERITY_WARNING),
        "recent": sum(1 for i in items if i["severity"] == SEVERITY_RECENT),
    }


def count_unresolved(session=None):
    return HelpStore(session).count_unresolved()


def student_help_detail(student, session=None):
    """Statistics plus the current unresolved help record for one student."""
    store = HelpStore(session)
    stats = store.get_stats(student.id)
    record = store.find_unresolved(student.id)
    classes = (store.session.query(SchoolClass)
               .join(ClassMembership, ClassMembership.class_id == SchoolClass.id)
               .filter(ClassMembership.student_id == student.id)
               .order_by(SchoolClass.name.asc())
               .all())
    return {
        "student": {"id": student.id, "name": student.name, "email": student.email},
        "statistics": stats.to_dict() if stats else None,
        "classes": [{"id": c.id, "name": c.name} for c in classes],
        "needsHelp": _decorate(record) if record else None,
    }


def teacher_can_view(viewer, record, session=None):
    if viewer.is_admin:
        return True
    if any(link.teacher_user_id == viewer.id for link in record.teacher_links):
        return True
    owned = set(HelpStore(session).owned_class_ids(viewer.id))
    return any(link.class_id in owned for link in record.class_links)


def teacher_can_view_student(viewer, student_id, session=None):
    """
    Same visibility as the list: the viewer owns one of the student's
    classes, or the student's open help record is linked to the viewer.
    """
    if viewer.is_admin:
        return True
    store = HelpStore(session)
    if set(store.owned_class_ids(viewer.id)) & set(store.class_ids_for_student(student_id)):
        return True
    record = store.find_unresolved(student_id)
    return record is not None and teacher_can_view(viewer, record, session)


def update_notes(record, teacher_notes=None, actions_taken=None):
    """Set teacher notes / actions on a record. Caller commits."""
    if teacher_notes is not None:
        record.teacher_notes = teacher_notes.strip() or None
    if actions_taken is not None:
        record.actions_taken = [str(a).strip() for a in actions_taken if str(a).strip()]
    record.updated_at = utcnow()
    return record
