"""
Unit tests for the atomic unit of work.
Tests: commit, rejection rollback, storage failure handling
"""
import logging

import pytest
from sqlalchemy.exc import OperationalError
from shared.errors import ConflictError, InternalError
from eventhub.models import db, Song
from eventhub.transactions import atomic


@pytest.fixture
def failing_commit(mocker):
    return mocker.patch.object(
        db.session, 'commit',
        side_effect=OperationalError('INSERT INTO songs', {}, Exception('disk I/O error'))
    )


class TestAtomic:
    """Tests for atomic."""

    def test_commits_block(self, db_session):
        with atomic('songs.create'):
            db.session.add(Song(title='Hello', artist='Adele'))

        assert Song.query.count() == 1

    def test_service_error_rolls_back(self, db_session, mocker):
        rollback = mocker.spy(db.session, 'rollback')

        with pytest.raises(ConflictError):
            with atomic('songs.create'):
                db.session.add(Song(title='Hello', artist='Adele'))
                raise ConflictError("Song already exists")

        rollback.assert_called_once()
        assert Song.query.count() == 0

    def test_storage_failure_becomes_internal_error(self, db_session, mocker, failing_commit, caplog):
        rollback = mocker.spy(db.session, 'rollback')

        with pytest.raises(InternalError) as exc_info:
            with atomic('songs.create', user_id=3):
                db.session.add(Song(title='Hello', artist='Adele'))

        error = exc_info.value
        assert error.message == 'Internal server error'
        assert error.to_dict() == {'error': 'Internal server error', 'kind': 'internal'}
        assert isinstance(error.__cause__, OperationalError)
        rollback.assert_called_once()
        assert Song.query.count() == 0

        failures = [r for r in caplog.records if r.levelno == logging.ERROR]
        assert len(failures) == 1
        assert 'songs.create' in failures[0].getMessage()
        assert failures[0].exc_info is not None

    def test_storage_failure_response_hides_cause(self, client, failing_commit):
        response = client.post('/api/v1/users', json={'display_name': 'Kim'})

        assert response.status_code == 500
        assert response.get_json() == {'error': 'Internal server error', 'kind': 'internal'}
        assert 'disk I/O' not in response.get_data(as_text=True)
