from conftest import NOW
from help_store import HelpStore
from student_stats import refresh_student_stats, refresh_all_stats


def test_refresh_counts_completed_and_scores(session, make):
    s = make.student()
    c = make.school_class(students=[s])
    a1 = make.assignment(school_class=c, questions=2)
    a2 = make.assignment(school_class=c, questions=2)
    make.assignment(school_class=c, questions=2)
    make.assignment(school_class=c, questions=2)
    make.answer(s, a1.questions[0], correct=True)
    make.answer(s, a1.questions[1], correct=False)
    make.complete(s, a2, correct=True)

    stats = refresh_student_stats(HelpStore(), s.id, now=NOW)

    assert stats.total_assignments == 4
    assert stats.completed_assignments == 2
    assert stats.completion_rate == 50.0
    assert stats.average_score == 75.0
    assert stats.total_answers == 4
    assert stats.total_correct_answers == 3
    assert stats.accuracy_rate == 75.0
    assert stats.last_updated == NOW


def test_partial_assignment_not_completed(session, make):
    s = make.student()
    a = make.assignment(students=[s], questions=3)
    make.answer(s, a.questions[0])

    stats = refresh_student_stats(HelpStore(), s.id, now=NOW)
    assert stats.completed_assignments == 0
    assert stats.completion_rate == 0.0
    assert stats.average_score == 0.0


def test_no_assignments(session, make):
    s = make.student()
    stats = refresh_student_stats(HelpStore(), s.id, now=NOW)
    assert stats.total_assignments == 0
    assert stats.completion_rate == 0.0


def test_refresh_all(session, make):
    s1, s2 = make.student(), make.student()
    make.assignment(students=[s1, s2])
    session.commit()

    store = HelpStore()
    refreshed, errors = refresh_all_stats(store, now=NOW)
    assert refreshed == 2
    assert errors == []
    assert store.get_stats(s2.id).total_assignments == 1
