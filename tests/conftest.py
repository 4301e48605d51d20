"""Shared fixtures."""
from datetime import datetime, timedelta

import pytest

from rollcall import create_app, db
from rollcall.models.user import User, UserRole
from rollcall.services.meeting_service import MeetingService

BASE_TIME = datetime(2030, 3, 4, 9, 0, 0)
PASSWORD = 'password123'

def make_user(email, name, role, student_id=None):
    user = User(email=email, name=name, role=role, student_id=student_id)
    user.set_password(PASSWORD)
    db.session.add(user)
    return user

def create_people():
    """Owner, a second faculty member, an admin and four students."""
    people = {
        'owner': make_user('owner@example.com', 'Dr. Owner', UserRole.FACULTY),
        'other_faculty': make_user('other@example.com', 'Dr. Other', UserRole.FACULTY),
        'admin': make_user('admin@example.com', 'Admin', UserRole.ADMIN),
        'alice': make_user('alice@example.com', 'Alice', UserRole.STUDENT, 'S-001'),
        'bob': make_user('bob@example.com', 'Bob', UserRole.STUDENT, 'S-002'),
        'carol': make_user('carol@example.com', 'Carol', UserRole.STUDENT, 'S-003'),
        'dave': make_user('dave@example.com', 'Dave', UserRole.STUDENT, 'S-004'),
    }
    db.session.commit()
    return people

def meeting_data(participant_ids, start_time=BASE_TIME, duration_minutes=60, settings=None, **extra):
    data = {
        'title': 'Distributed Systems',
        'subject': 'Computer Science',
        'course_code': 'cs401',
        'location': 'Hall B',
        'start_time': start_time.isoformat(),
        'end_time': (start_time + timedelta(minutes=duration_minutes)).isoformat(),
        'attendance_settings': settings or {},
        'participant_ids': participant_ids,
    }
    data.update(extra)
    return data

@pytest.fixture
def app():
    """Create test app."""
    app = create_app('testing')
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()

@pytest.fixture
def users(app):
    return create_people()

@pytest.fixture
def make_meeting(users):
    """Factory for meetings owned by ``users['owner']``."""
    def _make(participants=('alice', 'bob', 'carol'), settings=None, **kwargs):
        data = meeting_data([users[name].id for name in participants], settings=settings, **kwargs)
        meeting, error = MeetingService.create_meeting(users['owner'], data)
        assert error is None, error
        return meeting
    return _make

@pytest.fixture
def meeting(make_meeting):
    return make_meeting()

@pytest.fixture
def started(meeting, users):
    """The default meeting, started at BASE_TIME with a 30 minute token."""
    result, error = MeetingService.start(meeting.id, users['owner'], ttl_minutes=30, now=BASE_TIME)
    assert error is None, error
    return result

@pytest.fixture
def auth_headers(client, users):
    """Build Authorization headers for one of the fixture users."""
    def _headers(name):
        response = client.post('/api/auth/login', json={
            'email': users[name].email,
            'password': PASSWORD
        })
        assert response.status_code == 200, response.get_json()
        token = response.get_json()['data']['access_token']
        return {'Authorization': f'Bearer {token}'}
    return _headers
