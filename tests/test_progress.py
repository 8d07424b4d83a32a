import pytest

from enrollment_service import models, progress
from enrollment_service.errors import Forbidden, NotFound
from enrollment_service.models import EnrollmentStatus
from tests.fakes import sign


@pytest.fixture
def active_enrollment(checkout, student, paid_course):
    order = checkout.initiate_purchase(paid_course.id, student)
    checkout.confirm_payment(order["order_id"], "pay_1", sign(order["order_id"], "pay_1"))
    return checkout.db.query(models.Enrollment).filter(models.Enrollment.id == order["enrollment_id"]).one()


def test_percentage_rounding():
    assert progress._percentage(0, 0) == 0
    assert progress._percentage(1, 3) == 33
    assert progress._percentage(2, 3) == 67
    assert progress._percentage(1, 2) == 50
    assert progress._percentage(199, 200) == 99
    assert progress._percentage(3, 3) == 100


def test_pending_enrollment_cannot_complete_lessons(db, checkout, student, catalogue):
    checkout.initiate_purchase(catalogue["paid"].id, student)

    with pytest.raises(Forbidden):
        progress.mark_lesson_complete(db, student, catalogue["paid_lessons"][0].id)


def test_unenrolled_student_cannot_complete_lessons(db, other_student, catalogue, active_enrollment):
    with pytest.raises(Forbidden):
        progress.mark_lesson_complete(db, other_student, catalogue["paid_lessons"][0].id)


def test_instructor_cannot_complete_lessons(db, instructor, catalogue):
    with pytest.raises(Forbidden):
        progress.mark_lesson_complete(db, instructor, catalogue["paid_lessons"][0].id)


def test_unknown_lesson(db, student, catalogue):
    with pytest.raises(NotFound):
        progress.mark_lesson_complete(db, student, 9999)


def test_marking_twice_keeps_one_record(db, student, catalogue, active_enrollment):
    lesson = catalogue["paid_lessons"][0]

    first = progress.mark_lesson_complete(db, student, lesson.id)
    second = progress.mark_lesson_complete(db, student, lesson.id)

    assert first.id == second.id
    assert second.completed is True
    assert second.completed_at is not None
    assert db.query(models.Progress).count() == 1


def test_partial_progress_keeps_enrollment_active(db, student, catalogue, active_enrollment):
    progress.mark_lesson_complete(db, student, catalogue["paid_lessons"][0].id)

    result = progress.get_course_progress(db, student, catalogue["paid"].id)

    assert result == {
        "course_id": catalogue["paid"].id,
        "status": EnrollmentStatus.ACTIVE,
        "total_lessons": 3,
        "completed_lessons": 1,
        "progress_percentage": 33,
    }


def test_last_lesson_promotes_to_completed(db, student, catalogue, active_enrollment, published_events,
                                           publisher):
    for lesson in catalogue["paid_lessons"]:
        progress.mark_lesson_complete(db, student, lesson.id)

    result = progress.get_course_progress(db, student, catalogue["paid"].id, publisher=publisher)

    assert result["progress_percentage"] == 100
    assert result["status"] == EnrollmentStatus.COMPLETED
    db.refresh(active_enrollment)
    assert active_enrollment.status == EnrollmentStatus.COMPLETED
    assert published_events[-1][0] == "enrollment.events.completed"

    # completed is terminal for lesson tracking
    with pytest.raises(Forbidden):
        progress.mark_lesson_complete(db, student, catalogue["paid_lessons"][0].id)

    again = progress.get_course_progress(db, student, catalogue["paid"].id, publisher=publisher)
    assert again["status"] == EnrollmentStatus.COMPLETED
    assert [key for key, _ in published_events].count("enrollment.events.completed") == 1


def test_try_promote_to_completed_moves_once(db, active_enrollment):
    assert progress.try_promote_to_completed(db, active_enrollment) is True
    assert progress.try_promote_to_completed(db, active_enrollment) is False
    assert active_enrollment.status == EnrollmentStatus.COMPLETED


def test_try_promote_ignores_pending(db, checkout, student, paid_course):
    order = checkout.initiate_purchase(paid_course.id, student)
    enrollment = db.query(models.Enrollment).filter(models.Enrollment.id == order["enrollment_id"]).one()

    assert progress.try_promote_to_completed(db, enrollment) is False
    assert enrollment.status == EnrollmentStatus.PENDING


def test_course_without_lessons_reports_zero(db, checkout, student, instructor):
    course = models.Course(instructor_id=instructor.id, title="Empty", price=0,
                           status=models.CourseStatus.PUBLISHED)
    db.add(course)
    db.commit()
    checkout.enroll_free(course.id, student)

    result = progress.get_course_progress(db, student, course.id)

    assert result["total_lessons"] == 0
    assert result["progress_percentage"] == 0
    assert result["status"] == EnrollmentStatus.ACTIVE


def test_progress_requires_enrollment(db, student, catalogue):
    with pytest.raises(NotFound):
        progress.get_course_progress(db, student, catalogue["paid"].id)
