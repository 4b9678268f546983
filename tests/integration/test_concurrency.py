"""
Integration tests for contended operations.
Many threads race on one competition, one requester's queue slot or one
team; the counters must never pass their limits.
"""
import threading
from datetime import datetime

import pytest
from shared.errors import ServiceError
from eventhub.app import create_app
from eventhub.models import (
    db, User, UserRole, Event, Song, QueueEntry, Competition, CompetitionParticipant, Individual,
    TeamEntry,
)

THREADS = 10


@pytest.fixture(scope='module')
def threaded_app(tmp_path_factory):
    """App on a file database so that every thread gets its own connection."""
    path = tmp_path_factory.mktemp('concurrency') / 'eventhub.db'
    app = create_app('testing', config_overrides={
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{path}',
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'check_same_thread': False, 'timeout': 30}},
    })
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def setup(threaded_app):
    """Organizer, event with every module on, and ten players."""
    app = threaded_app
    with app.app_context():
        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        organizer = User(display_name='Org', role=UserRole.ORGANIZER.value)
        players = [User(display_name=f'P{i}', role=UserRole.PLAYER.value) for i in range(THREADS)]
        db.session.add_all([organizer] + players)
        db.session.commit()

        event = Event(name='Stress Night', code='EV-STRESS', organizer_id=organizer.id)
        db.session.add(event)
        db.session.commit()
        app.modules.initialize(event.id)
        app.modules.update_many(event.id, [
            {'module': 'tournament', 'active': True},
            {'module': 'team_mode', 'active': True},
            {'module': 'queue', 'settings': {'cooldown_minutes': 0}},
        ])
        return {
            'organizer': organizer.id,
            'event': event.id,
            'players': [p.id for p in players],
        }


def race(app, calls):
    """Run each call in its own thread and app context; returns (successes, errors)."""
    barrier = threading.Barrier(len(calls))
    successes, errors = [], []
    guard = threading.Lock()

    def worker(call):
        with app.app_context():
            barrier.wait()
            try:
                result = call()
            except ServiceError as e:
                with guard:
                    errors.append(e)
            else:
                with guard:
                    successes.append(result)

    threads = [threading.Thread(target=worker, args=(call,)) for call in calls]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return successes, errors


class TestCompetitionRegistration:

    def test_never_overfills(self, threaded_app, setup):
        app = threaded_app
        with app.app_context():
            competition = app.competitions.create(
                setup['event'], setup['organizer'], 'Rush', start_time=datetime(2024, 6, 1, 21),
                max_participants=4
            )
            competition_id = competition.id

        calls = [
            (lambda uid=uid: app.competitions.register(competition_id, uid, Individual(uid)).id)
            for uid in setup['players']
        ]
        successes, errors = race(app, calls)

        assert len(successes) == 4
        assert len(errors) == THREADS - 4
        assert {e.kind for e in errors} == {'conflict'}
        with app.app_context():
            assert db.session.get(Competition, competition_id).current_participant_count == 4
            assert CompetitionParticipant.query.filter_by(competition_id=competition_id).count() == 4


class TestQueueQuota:

    def test_same_requester_cannot_pass_quota(self, threaded_app, setup):
        app = threaded_app
        with app.app_context():
            songs = [Song(title=f'Track {i}', artist='Band', approved=True) for i in range(THREADS)]
            db.session.add_all(songs)
            db.session.commit()
            song_ids = [s.id for s in songs]
        requester = setup['players'][0]

        calls = [
            (lambda sid=sid: app.queue.submit(setup['event'], requester, sid).id)
            for sid in song_ids
        ]
        successes, errors = race(app, calls)

        assert len(successes) == 3
        assert {e.kind for e in errors} == {'quota_exceeded'}
        with app.app_context():
            assert QueueEntry.query.filter_by(requester_id=requester, status='pending').count() == 3


class TestTeamJoin:

    def test_team_never_exceeds_size(self, threaded_app, setup):
        app = threaded_app
        leader, *joiners = setup['players']
        with app.app_context():
            team = app.teams.create(setup['event'], leader, 'Crowded', max_members=3)
            team_id, code = team.id, team.invite_code

        calls = [(lambda uid=uid: app.teams.join(code, uid).id) for uid in joiners]
        successes, errors = race(app, calls)

        assert len(successes) == 2
        assert all(isinstance(e, ServiceError) for e in errors)
        with app.app_context():
            team = app.teams.get_team(team_id)
            assert len(team.active_members) == 3
            assert team.status == 'full'


class TestRosterLock:

    def test_start_and_joins_leave_roster_locked(self, threaded_app, setup):
        """However joins interleave with the start, the team ends up active."""
        app = threaded_app
        first, second, *joiners = setup['players']
        with app.app_context():
            competition = app.competitions.create(
                setup['event'], setup['organizer'], 'Choir Clash', start_time=datetime(2024, 6, 1, 21),
                format='team'
            )
            competition_id = competition.id
            recruiting = app.teams.create(setup['event'], first, 'Open Door', max_members=3)
            rival = app.teams.create(setup['event'], second, 'Closed Shop', max_members=2)
            team_id, code = recruiting.id, recruiting.invite_code
            app.competitions.register(competition_id, first, TeamEntry(team_id))
            app.competitions.register(competition_id, second, TeamEntry(rival.id))

        calls = [lambda: app.competitions.start(competition_id, setup['organizer']).id]
        calls += [(lambda uid=uid: app.teams.join(code, uid).id) for uid in joiners[:4]]
        successes, errors = race(app, calls)

        assert competition_id in successes
        assert {e.kind for e in errors} <= {'not_found', 'conflict'}
        with app.app_context():
            team = app.teams.get_team(team_id)
            assert team.status == 'active'
            assert team.invite_code is None
            assert len(team.active_members) <= 3
            assert db.session.get(Competition, competition_id).status == 'in_progress'
