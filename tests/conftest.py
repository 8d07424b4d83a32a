"""
Shared pytest fixtures.

Every test gets its own in-memory SQLite database (StaticPool keeps the single
connection alive across sessions), a fake gateway, and a seeded catalogue:

- ``student`` / ``other_student`` / ``instructor`` users
- ``paid_course`` (price 999, published, 3 lessons in 2 sections)
- ``free_course`` (price 0, published, 1 lesson)
- ``draft_course`` (price 499, draft)
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from enrollment_service import main, models
from enrollment_service.checkout import CheckoutService
from enrollment_service.database import Base
from tests.fakes import FakeGateway


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def published_events():
    return []


@pytest.fixture
def publisher(published_events):
    def publish(routing_key, event):
        published_events.append((routing_key, event))
    return publish


@pytest.fixture
def checkout(db, gateway, publisher):
    return CheckoutService(db, gateway, publisher=publisher)


@pytest.fixture
def users(db):
    student = models.User(name="Asha", email="asha@example.com", role=models.UserRole.STUDENT)
    other = models.User(name="Ravi", email="ravi@example.com", role=models.UserRole.STUDENT)
    instructor = models.User(name="Meera", email="meera@example.com", role=models.UserRole.INSTRUCTOR)
    db.add_all([student, other, instructor])
    db.commit()
    return {"student": student, "other_student": other, "instructor": instructor}


@pytest.fixture
def student(users):
    return users["student"]


@pytest.fixture
def other_student(users):
    return users["other_student"]


@pytest.fixture
def instructor(users):
    return users["instructor"]


def _add_course(db, instructor, title, price, status, lessons_per_section):
    course = models.Course(instructor_id=instructor.id, title=title, price=price, status=status)
    db.add(course)
    db.flush()
    lessons = []
    for s_order, count in enumerate(lessons_per_section, start=1):
        section = models.Section(course_id=course.id, title=f"{title} part {s_order}", order=s_order)
        db.add(section)
        db.flush()
        for l_order in range(1, count + 1):
            lesson = models.Lesson(section_id=section.id, title=f"Lesson {s_order}.{l_order}", order=l_order)
            db.add(lesson)
            lessons.append(lesson)
    db.commit()
    return course, lessons


@pytest.fixture
def catalogue(db, instructor):
    paid, paid_lessons = _add_course(db, instructor, "Python Basics", 999, models.CourseStatus.PUBLISHED, [2, 1])
    free, free_lessons = _add_course(db, instructor, "Intro to Git", 0, models.CourseStatus.PUBLISHED, [1])
    draft, _ = _add_course(db, instructor, "Advanced Django", 499, models.CourseStatus.DRAFT, [])
    return {
        "paid": paid,
        "paid_lessons": paid_lessons,
        "free": free,
        "free_lessons": free_lessons,
        "draft": draft,
    }


@pytest.fixture
def paid_course(catalogue):
    return catalogue["paid"]


@pytest.fixture
def free_course(catalogue):
    return catalogue["free"]


@pytest.fixture
def draft_course(catalogue):
    return catalogue["draft"]


@pytest.fixture
def client(db, gateway, publisher):
    def override_get_db():
        yield db

    main.app.dependency_overrides[main.get_db] = override_get_db
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()
