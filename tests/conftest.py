"""
Pytest configuration and fixtures for Tether tests.
"""

import os
import sys
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.models.base import Base, get_session_factory  # noqa: E402
from src.models.quiz import Quiz, QuizType  # noqa: E402
from src.models.user import User, UserRole  # noqa: E402


@pytest.fixture(scope="function")
def test_engine():
    """In-memory SQLite shared across threads (TestClient runs sync routes in a pool)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(test_engine):
    """Session factory bound to the test engine."""
    return get_session_factory(test_engine)


@pytest.fixture
def make_user(session_factory):
    """Create a user row and return its id."""

    def _make(role=UserRole.USER, name="Test User", email=None, therapist_id=None, has_onboarded=False, **extra):
        db = session_factory()
        try:
            user = User(
                id=uuid4(),
                name=name,
                email=email or f"{uuid4().hex[:12]}@example.com",
                role=role,
                has_onboarded=has_onboarded,
                assigned_therapist_id=therapist_id,
                **extra,
            )
            db.add(user)
            db.commit()
            return user.id
        finally:
            db.close()

    return _make


@pytest.fixture
def therapist_id(make_user):
    return make_user(role=UserRole.THERAPIST, name="Dr. Rivera", email="rivera@example.com")


@pytest.fixture
def client_id(make_user, therapist_id):
    return make_user(name="Alex Client", email="alex@example.com", therapist_id=therapist_id)


@pytest.fixture
def make_quiz(session_factory):
    """Create a quiz row and return its id."""

    def _make(title="Mood Check", quiz_type=QuizType.MCQ, question_count=10, estimated_minutes=None, is_active=True):
        db = session_factory()
        try:
            quiz = Quiz(
                id=uuid4(),
                title=title,
                type=quiz_type,
                question_count=question_count,
                estimated_minutes=estimated_minutes,
                is_active=is_active,
            )
            db.add(quiz)
            db.commit()
            return quiz.id
        finally:
            db.close()

    return _make
