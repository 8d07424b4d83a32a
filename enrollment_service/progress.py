import logging
import math
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from enrollment_service import models
from enrollment_service.checkout import require_student
from enrollment_service.database import atomic
from enrollment_service.errors import Forbidden, NotFound
from enrollment_service.models import EnrollmentStatus

logger = logging.getLogger(__name__)


def _lesson_course(db: Session, lesson_id: int):
    lesson = db.query(models.Lesson).filter(models.Lesson.id == lesson_id).first()
    if not lesson:
        raise NotFound("Lesson not found")
    section = db.query(models.Section).filter(models.Section.id == lesson.section_id).first()
    if not section:
        raise NotFound("Section not found")
    course = db.query(models.Course).filter(models.Course.id == section.course_id).first()
    if not course:
        raise NotFound("Course not found")
    return lesson, course


def mark_lesson_complete(db: Session, student: models.User, lesson_id: int) -> models.Progress:
    """Record a completed lesson. Requires an active enrollment; repeated calls are no-ops."""
    require_student(student, "complete lessons")
    lesson, course = _lesson_course(db, lesson_id)
    if course.status != models.CourseStatus.PUBLISHED:
        raise Forbidden("Course is not published")

    enrollment = (
        db.query(models.Enrollment)
        .filter(
            models.Enrollment.student_id == student.id,
            models.Enrollment.course_id == course.id,
            models.Enrollment.status == EnrollmentStatus.ACTIVE,
        )
        .first()
    )
    if not enrollment:
        raise Forbidden("You must be enrolled to complete lessons")

    def _existing():
        return (
            db.query(models.Progress)
            .filter(
                models.Progress.student_id == student.id,
                models.Progress.course_id == course.id,
                models.Progress.lesson_id == lesson.id,
            )
            .first()
        )

    progress = _existing()
    if progress is not None and progress.completed:
        return progress

    try:
        with atomic(db):
            if progress is None:
                progress = models.Progress(student_id=student.id, course_id=course.id, lesson_id=lesson.id)
                db.add(progress)
            progress.completed = True
            progress.completed_at = datetime.now(timezone.utc)
    except IntegrityError:
        # completed by a concurrent request
        progress = _existing()
        if progress is None:
            raise
        return progress

    db.refresh(progress)
    logger.info("Lesson %s completed by student=%s course=%s", lesson.id, student.id, course.id)
    return progress


def count_course_lessons(db: Session, course_id: int) -> int:
    return (
        db.query(models.Lesson)
        .join(models.Section, models.Section.id == models.Lesson.section_id)
        .filter(models.Section.course_id == course_id)
        .count()
    )


def count_completed_lessons(db: Session, student_id: int, course_id: int) -> int:
    return (
        db.query(models.Progress)
        .join(models.Lesson, models.Lesson.id == models.Progress.lesson_id)
        .join(models.Section, models.Section.id == models.Lesson.section_id)
        .filter(
            models.Progress.student_id == student_id,
            models.Progress.course_id == course_id,
            models.Progress.completed.is_(True),
            models.Section.course_id == course_id,
        )
        .count()
    )


def _percentage(completed: int, total: int) -> int:
    if not total:
        return 0
    if completed >= total:
        return 100
    # half-up rounding, never reporting 100 before the last lesson
    return min(int(math.floor(completed * 100 / total + 0.5)), 99)


def try_promote_to_completed(db: Session, enrollment: models.Enrollment) -> bool:
    """
    Move an enrollment from active to completed.

    Conditional on the stored status still being active, so concurrent
    progress reads promote once. Returns True when this call did the move.
    """
    with atomic(db):
        promoted = (
            db.query(models.Enrollment)
            .filter(models.Enrollment.id == enrollment.id, models.Enrollment.status == EnrollmentStatus.ACTIVE)
            .update({models.Enrollment.status: EnrollmentStatus.COMPLETED}, synchronize_session=False)
        )
    db.refresh(enrollment)
    if promoted:
        logger.info("Enrollment id=%s completed", enrollment.id)
    return bool(promoted)


def get_course_progress(db: Session, student: models.User, course_id: int,
                        publisher: Optional[Callable[[str, dict], None]] = None) -> dict:
    enrollment = (
        db.query(models.Enrollment)
        .filter(
            models.Enrollment.student_id == student.id,
            models.Enrollment.course_id == course_id,
            models.Enrollment.status.in_(EnrollmentStatus.ENROLLED),
        )
        .first()
    )
    if not enrollment:
        raise NotFound("Enrollment not found for this course")

    total = count_course_lessons(db, course_id)
    completed = count_completed_lessons(db, student.id, course_id) if total else 0
    percentage = _percentage(completed, total)

    if total and completed >= total and try_promote_to_completed(db, enrollment) and publisher is not None:
        publisher("enrollment.events.completed", {
            "type": "EnrollmentCompleted",
            "payload": {"enrollment_id": enrollment.id, "student_id": student.id, "course_id": course_id},
        })

    return {
        "course_id": course_id,
        "status": enrollment.status,
        "total_lessons": total,
        "completed_lessons": completed,
        "progress_percentage": percentage,
    }
