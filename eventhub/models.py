from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Union

from flask_sqlalchemy import SQLAlchemy
from flask_login import UserMixin
from sqlalchemy.orm import validates
from werkzeug.security import generate_password_hash

from shared.errors import ValidationError
from shared.state_machine import CompetitionState, TeamState

db = SQLAlchemy()

MAX_QUEUE_SCORE = 10000
TEAM_SIZE_RANGE = (2, 4)
COMPETITION_SIZE_RANGE = (2, 128)


class UserRole(str, Enum):
    PLAYER = "player"
    STAFF = "staff"
    ORGANIZER = "organizer"
    ADMIN = "admin"


class QueueStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class MembershipRole(str, Enum):
    LEADER = "leader"
    MEMBER = "member"


class MembershipStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    INVITED = "invited"


class CompetitionKind(str, Enum):
    TOURNAMENT = "tournament"
    CHAMPIONSHIP = "championship"
    LEAGUE = "league"
    BATTLE = "battle"


class CompetitionFormat(str, Enum):
    INDIVIDUAL = "individual"
    TEAM = "team"
    MIXED = "mixed"


class ParticipationKind(str, Enum):
    INDIVIDUAL = "individual"
    TEAM = "team"


class ParticipantStatus(str, Enum):
    REGISTERED = "registered"
    CONFIRMED = "confirmed"
    ELIMINATED = "eliminated"
    WINNER = "winner"
    WITHDRAWN = "withdrawn"


@dataclass(frozen=True)
class Individual:
    user_id: int

    def to_dict(self) -> dict:
        return {'kind': ParticipationKind.INDIVIDUAL.value, 'user_id': self.user_id}


@dataclass(frozen=True)
class TeamEntry:
    team_id: int

    def to_dict(self) -> dict:
        return {'kind': ParticipationKind.TEAM.value, 'team_id': self.team_id}


Entrant = Union[Individual, TeamEntry]


def _isoformat(value):
    return value.isoformat() if value else None


def _check_range(field: str, value, bounds):
    low, high = bounds
    if value is None or isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
        raise ValidationError(f"{field} must be an integer between {low} and {high}", field=field)
    return value


class User(UserMixin, db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    display_name = db.Column(db.String(100), nullable=False)
    role = db.Column(db.String(20), nullable=False, default=UserRole.PLAYER.value)
    password_hash = db.Column(db.String(256), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def get_id(self):
        """Return the user ID for Flask-Login session management."""
        return str(self.id)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    @validates('role')
    def validate_role(self, key, value):
        if value not in [r.value for r in UserRole]:
            raise ValidationError(f"Unknown role '{value}'", field='role')
        return value

    def to_dict(self):
        return {
            'id': self.id,
            'display_name': self.display_name,
            'role': self.role,
            'created_at': _isoformat(self.created_at),
        }


class Event(db.Model):
    __tablename__ = 'events'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    code = db.Column(db.String(20), unique=True, nullable=False, index=True)
    organizer_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    organizer = db.relationship('User')
    module_settings = db.relationship('ModuleSetting', back_populates='event', cascade='all, delete-orphan')

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'code': self.code,
            'organizer_id': self.organizer_id,
            'created_at': _isoformat(self.created_at),
        }


class Song(db.Model):
    __tablename__ = 'songs'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    artist = db.Column(db.String(200), nullable=False)
    approved = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'artist': self.artist,
            'approved': self.approved,
        }


class ModuleSetting(db.Model):
    __tablename__ = 'module_settings'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), nullable=False, index=True)
    module_name = db.Column(db.String(50), nullable=False)
    active = db.Column(db.Boolean, nullable=False, default=False)
    settings = db.Column(db.JSON, nullable=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    event = db.relationship('Event', back_populates='module_settings')

    __table_args__ = (
        db.UniqueConstraint('event_id', 'module_name', name='unique_module_per_event'),
    )

    def to_dict(self):
        return {
            'module': self.module_name,
            'active': self.active,
            'settings': self.settings,
            'updated_at': _isoformat(self.updated_at),
        }


class QueueEntry(db.Model):
    __tablename__ = 'queue_entries'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), nullable=False)
    requester_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    song_id = db.Column(db.Integer, db.ForeignKey('songs.id'), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=QueueStatus.PENDING.value)
    score = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    song = db.relationship('Song')

    __table_args__ = (
        db.Index('ix_queue_event_requester_status', 'event_id', 'requester_id', 'status'),
        db.CheckConstraint(f'score IS NULL OR (score >= 0 AND score <= {MAX_QUEUE_SCORE})',
                           name='queue_score_range'),
    )

    @validates('score')
    def validate_score(self, key, value):
        if value is None:
            return value
        return _check_range('score', value, (0, MAX_QUEUE_SCORE))

    def to_dict(self):
        return {
            'id': self.id,
            'event_id': self.event_id,
            'requester_id': self.requester_id,
            'song_id': self.song_id,
            'song': self.song.to_dict() if self.song else None,
            'status': self.status,
            'score': self.score,
            'created_at': _isoformat(self.created_at),
        }


class Team(db.Model):
    __tablename__ = 'teams'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), nullable=False, index=True)
    name = db.Column(db.String(100), nullable=False)
    leader_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    max_members = db.Column(db.Integer, nullable=False, default=4)
    invite_code = db.Column(db.String(10), unique=True, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=TeamState.FORMING.value)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    memberships = db.relationship('TeamMembership', back_populates='team', cascade='all, delete-orphan')

    @validates('max_members')
    def validate_max_members(self, key, value):
        return _check_range('max_members', value, TEAM_SIZE_RANGE)

    @property
    def active_members(self):
        return [m for m in self.memberships if m.status == MembershipStatus.ACTIVE]

    def to_dict(self, include_members: bool = True):
        data = {
            'id': self.id,
            'event_id': self.event_id,
            'name': self.name,
            'leader_id': self.leader_id,
            'max_members': self.max_members,
            'member_count': len(self.active_members),
            'invite_code': self.invite_code,
            'status': self.status,
            'created_at': _isoformat(self.created_at),
        }
        if include_members:
            data['members'] = [m.to_dict() for m in self.active_members]
        return data


class TeamMembership(db.Model):
    __tablename__ = 'team_memberships'

    id = db.Column(db.Integer, primary_key=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    role = db.Column(db.String(20), nullable=False, default=MembershipRole.MEMBER.value)
    status = db.Column(db.String(20), nullable=False, default=MembershipStatus.ACTIVE.value)
    joined_at = db.Column(db.DateTime, default=datetime.utcnow)

    team = db.relationship('Team', back_populates='memberships')

    __table_args__ = (
        db.UniqueConstraint('team_id', 'user_id', name='unique_membership'),
    )

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'role': self.role,
            'status': self.status,
            'joined_at': _isoformat(self.joined_at),
        }


class Competition(db.Model):
    __tablename__ = 'competitions'

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.Integer, db.ForeignKey('events.id'), nullable=False, index=True)
    name = db.Column(db.String(200), nullable=False)
    kind = db.Column(db.String(20), nullable=False, default=CompetitionKind.TOURNAMENT.value)
    format = db.Column(db.String(20), nullable=False, default=CompetitionFormat.INDIVIDUAL.value)
    status = db.Column(db.String(20), nullable=False, default=CompetitionState.REGISTRATION.value)
    max_participants = db.Column(db.Integer, nullable=False)
    current_participant_count = db.Column(db.Integer, nullable=False, default=0)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=True)
    prize = db.Column(db.String(500), nullable=True)
    entry_fee = db.Column(db.Float, nullable=True, default=0)
    rules = db.Column(db.Text, nullable=True)
    bracket = db.Column(db.JSON, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    participants = db.relationship('CompetitionParticipant', back_populates='competition',
                                   cascade='all, delete-orphan',
                                   order_by='CompetitionParticipant.id')

    __table_args__ = (
        db.CheckConstraint('current_participant_count <= max_participants', name='competition_capacity'),
    )

    @validates('max_participants')
    def validate_max_participants(self, key, value):
        return _check_range('max_participants', value, COMPETITION_SIZE_RANGE)

    @validates('kind')
    def validate_kind(self, key, value):
        if value not in [k.value for k in CompetitionKind]:
            raise ValidationError(f"Unknown competition kind '{value}'", field='kind')
        return value

    @validates('format')
    def validate_format(self, key, value):
        if value not in [f.value for f in CompetitionFormat]:
            raise ValidationError(f"Unknown competition format '{value}'", field='format')
        return value

    def to_dict(self, include_participants: bool = False):
        data = {
            'id': self.id,
            'event_id': self.event_id,
            'name': self.name,
            'kind': self.kind,
            'format': self.format,
            'status': self.status,
            'max_participants': self.max_participants,
            'current_participant_count': self.current_participant_count,
            'start_time': _isoformat(self.start_time),
            'end_time': _isoformat(self.end_time),
            'prize': self.prize,
            'entry_fee': self.entry_fee,
            'rules': self.rules,
            'bracket': self.bracket,
        }
        if include_participants:
            data['participants'] = [p.to_dict() for p in self.participants]
        return data


class CompetitionParticipant(db.Model):
    __tablename__ = 'competition_participants'

    id = db.Column(db.Integer, primary_key=True)
    competition_id = db.Column(db.Integer, db.ForeignKey('competitions.id'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    team_id = db.Column(db.Integer, db.ForeignKey('teams.id'), nullable=True)
    participation_kind = db.Column(db.String(20), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=ParticipantStatus.REGISTERED.value)
    final_rank = db.Column(db.Integer, nullable=True)
    total_score = db.Column(db.Float, nullable=False, default=0)
    registered_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    competition = db.relationship('Competition', back_populates='participants')
    team = db.relationship('Team')

    __table_args__ = (
        db.UniqueConstraint('competition_id', 'user_id', name='unique_user_per_competition'),
        db.UniqueConstraint('competition_id', 'team_id', name='unique_team_per_competition'),
        db.CheckConstraint('(user_id IS NULL) <> (team_id IS NULL)', name='participant_user_xor_team'),
    )

    @classmethod
    def for_entrant(cls, competition_id: int, entrant: Entrant, **kwargs) -> 'CompetitionParticipant':
        if isinstance(entrant, Individual):
            return cls(competition_id=competition_id, user_id=entrant.user_id,
                       participation_kind=ParticipationKind.INDIVIDUAL.value, **kwargs)
        return cls(competition_id=competition_id, team_id=entrant.team_id,
                   participation_kind=ParticipationKind.TEAM.value, **kwargs)

    @property
    def entrant(self) -> Entrant:
        if self.participation_kind == ParticipationKind.TEAM:
            return TeamEntry(self.team_id)
        return Individual(self.user_id)

    def to_dict(self):
        return {
            'id': self.id,
            'competition_id': self.competition_id,
            'entrant': self.entrant.to_dict(),
            'status': self.status,
            'final_rank': self.final_rank,
            'total_score': self.total_score,
            'registered_at': _isoformat(self.registered_at),
        }
