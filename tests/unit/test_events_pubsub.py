"""
Unit tests for activity events and ActivityPublisher.
Tests: ActivityEvent serialization, publish, recent
"""
import redis
from shared.events import (
    ActivityEvent,
    EventType,
    match_result_event,
    queue_entry_event,
)
from shared.pubsub import ActivityPublisher


class TestActivityEvent:
    """Tests for ActivityEvent."""

    def test_timestamp_defaults(self):
        event = ActivityEvent(type=EventType.MODULES_RESET, event_id=1)
        assert event.timestamp.endswith('Z')
        assert event.data == {}

    def test_json_round_trip(self):
        event = match_result_event(3, 7, 'r1_m2', 42, 1)
        restored = ActivityEvent.from_json(event.to_json())

        assert restored.type == EventType.MATCH_RESULT
        assert restored.event_id == 3
        assert restored.data == {'competition_id': 7, 'match_id': 'r1_m2', 'winner': 42, 'round': 1}

    def test_unknown_type_kept_as_string(self):
        event = ActivityEvent.from_dict({'type': 'chat.message', 'event_id': 1})
        assert event.type == 'chat.message'
        assert event.to_dict()['type'] == 'chat.message'

    def test_queue_score_only_when_given(self):
        added = queue_entry_event(EventType.QUEUE_ENTRY_ADDED, 1, 2, 3, 4)
        played = queue_entry_event(EventType.QUEUE_ENTRY_PLAYED, 1, 2, 3, 4, score=0)
        assert 'score' not in added.data
        assert played.data['score'] == 0


class TestActivityPublisher:
    """Tests for ActivityPublisher."""

    def test_no_redis_is_noop(self):
        publisher = ActivityPublisher()
        publisher.publish(ActivityEvent(type=EventType.MODULES_RESET, event_id=1))
        assert publisher.recent(1) == []

    def test_publish_fans_out_and_logs(self, mocker):
        client = mocker.MagicMock()
        publisher = ActivityPublisher(client, log_size=100)
        event = ActivityEvent(type=EventType.MODULES_RESET, event_id=5)

        publisher.publish(event)

        client.publish.assert_called_once_with('event:5:activity', event.to_json())
        client.lpush.assert_called_once_with('event:5:activity_log', event.to_json())
        client.ltrim.assert_called_once_with('event:5:activity_log', 0, 99)

    def test_redis_failure_is_logged(self, mocker, caplog):
        client = mocker.MagicMock()
        client.publish.side_effect = redis.RedisError("connection refused")
        publisher = ActivityPublisher(client)

        publisher.publish(ActivityEvent(type=EventType.MODULES_RESET, event_id=5))

        assert 'Failed to publish activity' in caplog.text
        client.lpush.assert_not_called()

    def test_recent(self, mocker):
        client = mocker.MagicMock()
        stored = ActivityEvent(type=EventType.MODULES_RESET, event_id=5)
        client.lrange.return_value = [stored.to_json()]

        events = ActivityPublisher(client).recent(5, count=10)

        client.lrange.assert_called_once_with('event:5:activity_log', 0, 9)
        assert [e.type for e in events] == [EventType.MODULES_RESET]
