import logging
import math
from datetime import datetime
from typing import Callable, List, Optional

from shared.errors import (
    NotFoundError, ConflictError, InvalidStateError, QuotaExceededError, RateLimitedError,
    ValidationError,
)
from shared.events import EventType, queue_entry_event
from shared.locks import KeyedLocks
from shared.pubsub import ActivityPublisher
from . import identity
from .models import db, QueueEntry, QueueStatus
from .module_gate import ModuleGate
from .transactions import atomic

logger = logging.getLogger(__name__)

QUEUE_MODULE = 'queue'


class QueueAdmissionController:
    """
    Admits song requests into an event's queue.

    A submission passes the module gate and the song catalog check, then the
    admission checks (per-user quota, duplicate pending song, cooldown since
    the requester's last entry). Everything runs while holding the lock for
    (event, requester), so two submissions from the same person never both
    pass the quota check.
    """

    def __init__(
        self,
        gate: ModuleGate,
        locks: KeyedLocks = None,
        publisher: ActivityPublisher = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.gate = gate
        self.locks = locks or KeyedLocks()
        self.publisher = publisher or ActivityPublisher()
        self.clock = clock

    @staticmethod
    def lock_key(event_id: int, requester_id: int) -> str:
        return f"queue:{event_id}:{requester_id}"

    def submit(self, event_id: int, requester_id: int, song_id: int,
               now: Optional[datetime] = None) -> QueueEntry:
        now = now or self.clock()

        with self.locks.hold(self.lock_key(event_id, requester_id)):
            with atomic('queue.submit', event_id=event_id, requester_id=requester_id, song_id=song_id):
                self.gate.require_active(event_id, QUEUE_MODULE)

                song = identity.get_song(song_id)
                if not song.approved:
                    raise InvalidStateError("Song has not been approved yet", song_id=song_id)
                identity.get_user(requester_id)

                settings = self.gate.resolved_settings(event_id, QUEUE_MODULE)

                pending = QueueEntry.query.filter_by(
                    event_id=event_id,
                    requester_id=requester_id,
                    status=QueueStatus.PENDING.value
                ).count()
                if pending >= settings.max_songs_per_user:
                    raise QuotaExceededError(
                        f"You already have {pending} songs waiting in the queue",
                        limit=settings.max_songs_per_user
                    )

                if not settings.allow_duplicates:
                    duplicate = QueueEntry.query.filter_by(
                        event_id=event_id,
                        song_id=song_id,
                        status=QueueStatus.PENDING.value
                    ).first()
                    if duplicate:
                        raise ConflictError("This song is already waiting in the queue", song_id=song_id)

                if settings.cooldown_minutes > 0:
                    self._check_cooldown(event_id, requester_id, settings.cooldown_minutes, now)

                entry = QueueEntry(
                    event_id=event_id,
                    requester_id=requester_id,
                    song_id=song_id,
                    status=QueueStatus.PENDING.value,
                    created_at=now
                )
                db.session.add(entry)

        logger.debug(f"Queued song {song_id} for user {requester_id} in event {event_id}")
        self.publisher.publish(queue_entry_event(
            EventType.QUEUE_ENTRY_ADDED, event_id, entry.id, song_id, requester_id
        ))
        return entry

    def _check_cooldown(self, event_id: int, requester_id: int, cooldown_minutes: int, now: datetime):
        # Any state counts here, finished entries included.
        last = QueueEntry.query.filter_by(
            event_id=event_id,
            requester_id=requester_id
        ).order_by(QueueEntry.created_at.desc(), QueueEntry.id.desc()).first()
        if last is None or last.created_at is None:
            return

        elapsed = (now - last.created_at).total_seconds()
        remaining = cooldown_minutes * 60 - elapsed
        if remaining > 0:
            minutes = math.ceil(remaining / 60)
            raise RateLimitedError(
                f"Wait {minutes} minute(s) before requesting another song",
                retry_after_minutes=minutes
            )

    def _get_entry(self, entry_id: int) -> QueueEntry:
        entry = db.session.get(QueueEntry, entry_id)
        if not entry:
            raise NotFoundError("Queue entry not found", entry_id=entry_id)
        return entry

    def mark_played(self, entry_id: int, acting_user_id: int, score: Optional[int] = None) -> QueueEntry:
        with atomic('queue.mark_played', entry_id=entry_id, user_id=acting_user_id):
            entry = self._get_entry(entry_id)
            self.gate.require_active(entry.event_id, QUEUE_MODULE)
            event = identity.get_event(entry.event_id)
            identity.require_event_manager(identity.get_user(acting_user_id), event, "mark songs as played")

            if entry.status == QueueStatus.FINISHED:
                raise InvalidStateError("Song was already played", entry_id=entry_id)
            if score is not None and (isinstance(score, bool) or not isinstance(score, int)):
                raise ValidationError("score must be an integer", field='score')

            entry.status = QueueStatus.FINISHED.value
            entry.score = score

        self.publisher.publish(queue_entry_event(
            EventType.QUEUE_ENTRY_PLAYED, entry.event_id, entry.id, entry.song_id,
            entry.requester_id, score=score
        ))
        return entry

    def remove(self, entry_id: int, acting_user_id: int):
        with atomic('queue.remove', entry_id=entry_id, user_id=acting_user_id):
            entry = self._get_entry(entry_id)
            self.gate.require_active(entry.event_id, QUEUE_MODULE)
            event = identity.get_event(entry.event_id)
            user = identity.get_user(acting_user_id)
            if entry.requester_id != user.id:
                identity.require_event_manager(user, event, "remove other people's songs")

            event_id, song_id, requester_id = entry.event_id, entry.song_id, entry.requester_id
            db.session.delete(entry)

        self.publisher.publish(queue_entry_event(
            EventType.QUEUE_ENTRY_REMOVED, event_id, entry_id, song_id, requester_id
        ))

    def list_queue(self, event_id: int, status: Optional[str] = None) -> List[QueueEntry]:
        self.gate.require_active(event_id, QUEUE_MODULE)
        identity.get_event(event_id)

        query = QueueEntry.query.filter_by(event_id=event_id)
        if status is not None:
            if status not in [s.value for s in QueueStatus]:
                raise ValidationError(f"Unknown queue status '{status}'", field='status')
            query = query.filter_by(status=status)
        return query.order_by(QueueEntry.created_at.asc(), QueueEntry.id.asc()).all()
