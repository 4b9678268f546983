"""
Pytest configuration and fixtures for event hub tests.
"""
import os
import sys
import random
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from eventhub.app import create_app
from eventhub.models import (
    db, User, UserRole, Event, Song, Competition, Individual,
)
from eventhub.competition_lifecycle import CompetitionLifecycle
from eventhub.module_gate import ModuleGate
from eventhub.queue_admission import QueueAdmissionController
from eventhub.team_formation import TeamFormation
from shared.locks import KeyedLocks
from shared.pubsub import ActivityPublisher


class FakeClock:
    """Settable clock for cooldown and end-time tests."""

    def __init__(self, now: datetime = None):
        self.now = now or datetime(2024, 6, 1, 20, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def clear_tables():
    db.session.remove()
    for table in reversed(db.metadata.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')
    yield app
    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Clean database and an application context held for the whole test."""
    with app.app_context():
        clear_tables()
        yield db.session
        db.session.rollback()


@pytest.fixture(scope='function')
def client(app):
    """Create test client against a clean database."""
    with app.app_context():
        clear_tables()
    return app.test_client()


# ==================== Services ====================

@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def publisher(mocker):
    """Publisher whose publish calls are recorded instead of sent."""
    publisher = ActivityPublisher()
    mocker.spy(publisher, 'publish')
    return publisher


@pytest.fixture
def gate(publisher):
    return ModuleGate(publisher)


@pytest.fixture
def queue(gate, publisher, clock):
    return QueueAdmissionController(gate, KeyedLocks(), publisher, clock=clock)


@pytest.fixture
def teams(gate, publisher):
    return TeamFormation(gate, KeyedLocks(), publisher, rng=random.Random(7))


@pytest.fixture
def competitions(gate, teams, publisher, clock):
    return CompetitionLifecycle(gate, teams, KeyedLocks(), publisher, rng=random.Random(42), clock=clock)


# ==================== Data ====================

@pytest.fixture
def make_user(db_session):
    """Factory: make_user(role='player', name=None) -> User"""
    counter = {'n': 0}

    def _make(role: str = UserRole.PLAYER.value, name: str = None) -> User:
        counter['n'] += 1
        user = User(display_name=name or f"{role.title()} {counter['n']}", role=role)
        db.session.add(user)
        db.session.commit()
        return user

    return _make


@pytest.fixture
def organizer(make_user):
    return make_user(UserRole.ORGANIZER.value, 'Olivia Organizer')


@pytest.fixture
def admin(make_user):
    return make_user(UserRole.ADMIN.value, 'Ada Admin')


@pytest.fixture
def staff(make_user):
    return make_user(UserRole.STAFF.value, 'Sam Staff')


@pytest.fixture
def player(make_user):
    return make_user(UserRole.PLAYER.value, 'Pat Player')


@pytest.fixture
def event(db_session, organizer, gate):
    """An event with module settings initialized."""
    event = Event(name='Friday Karaoke', code='EV-TEST01', organizer_id=organizer.id)
    db.session.add(event)
    db.session.commit()
    gate.initialize(event.id)
    return event


@pytest.fixture
def make_song(db_session):
    def _make(title: str = 'Bohemian Rhapsody', artist: str = 'Queen', approved: bool = True) -> Song:
        song = Song(title=title, artist=artist, approved=approved)
        db.session.add(song)
        db.session.commit()
        return song

    return _make


@pytest.fixture
def song(make_song):
    return make_song()


@pytest.fixture
def team_event(event, gate):
    """The event with team_mode switched on."""
    gate.update(event.id, 'team_mode', True)
    return event


@pytest.fixture
def tournament_event(event, gate):
    """The event with tournament and team_mode switched on."""
    gate.update(event.id, 'tournament', True)
    gate.update(event.id, 'team_mode', True)
    return event


@pytest.fixture
def make_competition(tournament_event, organizer, competitions):
    def _make(max_participants: int = 8, format: str = 'individual', **kwargs) -> Competition:
        return competitions.create(
            tournament_event.id,
            organizer.id,
            name=kwargs.pop('name', 'Sing-off'),
            start_time=kwargs.pop('start_time', datetime(2024, 6, 1, 21, 0, 0)),
            format=format,
            max_participants=max_participants,
            **kwargs
        )

    return _make


@pytest.fixture
def register_players(competitions, make_user):
    """Factory: register_players(competition, n) -> list of participants"""
    def _register(competition: Competition, n: int):
        participants = []
        for _ in range(n):
            user = make_user()
            participants.append(competitions.register(competition.id, user.id, Individual(user.id)))
        return participants

    return _register


# ==================== HTTP ====================

@pytest.fixture
def api_users(app, client):
    """One user per role, created directly; returns ids keyed by role."""
    with app.app_context():
        ids = {}
        for role in UserRole:
            user = User(display_name=f'{role.value.title()} User', role=role.value)
            db.session.add(user)
            db.session.commit()
            ids[role.value] = user.id
        return ids


@pytest.fixture
def as_user():
    """Headers identifying the acting user: as_user(user_id) -> dict"""
    def _headers(user_id: int) -> dict:
        return {'X-User-Id': str(user_id)}

    return _headers


@pytest.fixture
def api_event(client, api_users, as_user):
    """Event created through the API by the organizer; returns its id."""
    response = client.post('/api/v1/events', json={'name': 'Saturday Session'},
                           headers=as_user(api_users['organizer']))
    assert response.status_code == 201
    return response.get_json()['event']['id']


@pytest.fixture
def api_song(client, api_users, as_user):
    """Approved song created through the API; returns its id."""
    response = client.post('/api/v1/songs', json={'title': 'Dancing Queen', 'artist': 'ABBA'},
                           headers=as_user(api_users['staff']))
    assert response.status_code == 201
    song_id = response.get_json()['song']['id']
    response = client.post(f'/api/v1/songs/{song_id}/approve', headers=as_user(api_users['organizer']))
    assert response.status_code == 200
    return song_id
