"""
Lookups and permission checks against users, events and songs.

These are the collaborators the gating, queue, team and competition services
consult; they never mutate anything.
"""
from shared.errors import NotFoundError, ForbiddenError
from .models import db, User, Event, Song, UserRole


def get_user(user_id) -> User:
    user = db.session.get(User, user_id) if user_id is not None else None
    if not user:
        raise NotFoundError("User not found", user_id=user_id)
    return user


def get_event(event_id) -> Event:
    event = db.session.get(Event, event_id) if event_id is not None else None
    if not event:
        raise NotFoundError("Event not found", event_id=event_id)
    return event


def get_song(song_id) -> Song:
    song = db.session.get(Song, song_id) if song_id is not None else None
    if not song:
        raise NotFoundError("Song not found", song_id=song_id)
    return song


def is_event_manager(user: User, event: Event) -> bool:
    return user.role == UserRole.ADMIN or event.organizer_id == user.id


def is_event_staff(user: User, event: Event) -> bool:
    return is_event_manager(user, event) or user.role == UserRole.STAFF


def require_event_manager(user: User, event: Event, action: str):
    if not is_event_manager(user, event):
        raise ForbiddenError(f"Only the event organizer or an admin may {action}")


def require_event_staff(user: User, event: Event, action: str):
    if not is_event_staff(user, event):
        raise ForbiddenError(f"Only event staff, the organizer or an admin may {action}")


def require_role(user: User, roles, action: str):
    if user.role not in [r.value for r in roles]:
        raise ForbiddenError(f"Your role may not {action}")
