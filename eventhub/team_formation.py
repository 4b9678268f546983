import logging
import random
from typing import List, Optional, Tuple

from shared.errors import (
    NotFoundError, ForbiddenError, ConflictError, InvalidStateError, ValidationError,
)
from shared.events import team_status_changed_event
from shared.locks import KeyedLocks
from shared.pubsub import ActivityPublisher
from shared.state_machine import TeamState, TeamStateMachine
from . import identity
from .codes import generate_invite_code, normalize_invite_code
from .models import db, Team, TeamMembership, MembershipRole, MembershipStatus
from .module_gate import ModuleGate
from .transactions import atomic

logger = logging.getLogger(__name__)

TEAM_MODULE = 'team_mode'
MAX_TEAM_NAME_LENGTH = 100
INVITE_CODE_ATTEMPTS = 20

# Only teams that are still recruiting accept invite codes.
RECRUITING_STATES = (TeamState.FORMING.value, TeamState.FULL.value)


class TeamFormation:
    """
    Team lifecycle for an event: create, join by invite code, leave, hand
    over leadership and dissolve.

    Team status follows TeamStateMachine. Joins and leaves are serialized per
    team so the member count and the forming/full status always agree.
    """

    def __init__(
        self,
        gate: ModuleGate,
        locks: KeyedLocks = None,
        publisher: ActivityPublisher = None,
        rng: random.Random = None
    ):
        self.gate = gate
        self.locks = locks or KeyedLocks()
        self.publisher = publisher or ActivityPublisher()
        self.rng = rng or random.Random()

    @staticmethod
    def lock_key(team_id: int) -> str:
        return f"team:{team_id}"

    # Lookups

    def _get_team(self, team_id: int) -> Team:
        team = db.session.get(Team, team_id) if team_id is not None else None
        if not team:
            raise NotFoundError("Team not found", team_id=team_id)
        return team

    @staticmethod
    def _membership(team: Team, user_id: int) -> Optional[TeamMembership]:
        for membership in team.memberships:
            if membership.user_id == user_id:
                return membership
        return None

    @staticmethod
    def _current_team(event_id: int, user_id: int) -> Optional[Team]:
        """The non-dissolved team in this event the user leads or belongs to, if any."""
        led = Team.query.filter(
            Team.event_id == event_id,
            Team.leader_id == user_id,
            Team.status != TeamState.DISSOLVED.value
        ).first()
        if led:
            return led
        return Team.query.join(TeamMembership).filter(
            Team.event_id == event_id,
            Team.status != TeamState.DISSOLVED.value,
            TeamMembership.user_id == user_id,
            TeamMembership.status.in_([MembershipStatus.ACTIVE.value, MembershipStatus.INVITED.value])
        ).first()

    @staticmethod
    def _require_leader(team: Team, user_id: int, action: str):
        if team.leader_id != user_id:
            raise ForbiddenError(f"Only the team leader may {action}", team_id=team.id)

    @staticmethod
    def _state_machine(team: Team) -> TeamStateMachine:
        return TeamStateMachine.from_state_string(team.status)

    def _validate_name(self, event_id: int, name, exclude_team_id: int = None) -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Team name is required", field='name')
        name = name.strip()
        if len(name) > MAX_TEAM_NAME_LENGTH:
            raise ValidationError(f"Team name must be at most {MAX_TEAM_NAME_LENGTH} characters", field='name')

        query = Team.query.filter(
            Team.event_id == event_id,
            Team.name == name,
            Team.status != TeamState.DISSOLVED.value
        )
        if exclude_team_id is not None:
            query = query.filter(Team.id != exclude_team_id)
        if query.first():
            raise ConflictError("A team with this name already exists in the event", name=name)
        return name

    def _new_invite_code(self) -> str:
        for _ in range(INVITE_CODE_ATTEMPTS):
            code = generate_invite_code(self.rng)
            if not Team.query.filter_by(invite_code=code).first():
                return code
        raise ConflictError("Could not allocate a unique invite code")

    # Status bookkeeping

    def _apply(self, team: Team, action: str, changes: List[Tuple[str, str]]):
        sm = self._state_machine(team)
        old_state = sm.state
        new_state = sm.transition(action)
        team.status = new_state.value
        changes.append((old_state.value, new_state.value))

    def _sync_capacity(self, team: Team, changes: List[Tuple[str, str]]):
        count = len(team.active_members)
        if team.status == TeamState.FORMING and count >= team.max_members:
            self._apply(team, "fill", changes)
        elif team.status == TeamState.FULL and count < team.max_members:
            self._apply(team, "vacate", changes)

    def _publish(self, team: Team, changes: List[Tuple[str, str]]):
        for from_state, to_state in changes:
            logger.info(f"Team {team.id} {from_state} -> {to_state}")
            self.publisher.publish(team_status_changed_event(team.event_id, team.id, from_state, to_state))

    # Operations

    def create(self, event_id: int, founder_id: int, name: str, max_members: Optional[int] = None) -> Team:
        with atomic('teams.create', event_id=event_id, founder_id=founder_id):
            self.gate.require_active(event_id, TEAM_MODULE)
            identity.get_event(event_id)
            identity.get_user(founder_id)

            if self._current_team(event_id, founder_id):
                raise ConflictError("You already lead or belong to a team in this event")

            name = self._validate_name(event_id, name)
            if max_members is None:
                max_members = self.gate.resolved_settings(event_id, TEAM_MODULE).max_team_size

            team = Team(
                event_id=event_id,
                name=name,
                leader_id=founder_id,
                max_members=max_members,
                invite_code=self._new_invite_code(),
                status=TeamState.FORMING.value
            )
            team.memberships.append(TeamMembership(
                user_id=founder_id,
                role=MembershipRole.LEADER.value,
                status=MembershipStatus.ACTIVE.value
            ))
            db.session.add(team)

        logger.info(f"Team {team.id} '{team.name}' created in event {event_id}")
        return team

    def join(self, invite_code: str, user_id: int) -> Team:
        code = normalize_invite_code(invite_code)
        team_id = db.session.query(Team.id).filter(
            Team.invite_code == code,
            Team.status.in_(RECRUITING_STATES)
        ).scalar() if code else None
        if team_id is None:
            raise NotFoundError("Invalid invite code or team not found")

        changes = []
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.join', team_id=team_id, user_id=user_id):
                team = self._get_team(team_id)
                if team.status not in RECRUITING_STATES or team.invite_code != code:
                    raise NotFoundError("Invalid invite code or team not found")
                self.gate.require_active(team.event_id, TEAM_MODULE)
                identity.get_user(user_id)

                if len(team.active_members) >= team.max_members:
                    raise ConflictError("Team is already full", team_id=team.id)

                existing = self._membership(team, user_id)
                if existing and existing.status == MembershipStatus.ACTIVE:
                    raise ConflictError("You are already a member of this team", team_id=team.id)

                other = self._current_team(team.event_id, user_id)
                if other and other.id != team.id:
                    raise ConflictError("You already belong to a team in this event", team_id=other.id)

                if existing:
                    existing.status = MembershipStatus.ACTIVE.value
                    existing.role = MembershipRole.MEMBER.value
                else:
                    team.memberships.append(TeamMembership(
                        user_id=user_id,
                        role=MembershipRole.MEMBER.value,
                        status=MembershipStatus.ACTIVE.value
                    ))
                db.session.flush()
                self._sync_capacity(team, changes)

        self._publish(team, changes)
        return team

    def leave(self, team_id: int, user_id: int) -> Team:
        changes = []
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.leave', team_id=team_id, user_id=user_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)

                membership = self._membership(team, user_id)
                if not membership or membership.status != MembershipStatus.ACTIVE:
                    raise NotFoundError("You are not a member of this team", team_id=team_id)
                if membership.role == MembershipRole.LEADER:
                    raise InvalidStateError(
                        "Leaders cannot leave the team. Promote another member or dissolve it.",
                        team_id=team_id
                    )
                self._state_machine(team).require("leave")

                team.memberships.remove(membership)
                db.session.flush()
                self._sync_capacity(team, changes)

        self._publish(team, changes)
        return team

    def promote(self, team_id: int, current_leader_id: int, new_leader_id: int) -> Team:
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.promote', team_id=team_id, user_id=current_leader_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)
                self._require_leader(team, current_leader_id, "promote members")

                target = self._membership(team, new_leader_id)
                if not target or target.status != MembershipStatus.ACTIVE or new_leader_id == current_leader_id:
                    raise NotFoundError("Member not found in this team", user_id=new_leader_id)
                self._state_machine(team).require("promote")

                current = self._membership(team, current_leader_id)
                if current:
                    current.role = MembershipRole.MEMBER.value
                target.role = MembershipRole.LEADER.value
                team.leader_id = new_leader_id

        logger.info(f"Team {team_id} leadership passed from {current_leader_id} to {new_leader_id}")
        return team

    def dissolve(self, team_id: int, leader_id: int) -> Team:
        changes = []
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.dissolve', team_id=team_id, user_id=leader_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)
                self._require_leader(team, leader_id, "dissolve the team")

                self._apply(team, "dissolve", changes)
                team.memberships.clear()
                team.invite_code = None

        self._publish(team, changes)
        return team

    def remove_member(self, team_id: int, leader_id: int, member_id: int) -> Team:
        changes = []
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.remove_member', team_id=team_id, user_id=leader_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)
                self._require_leader(team, leader_id, "remove members")
                if member_id == leader_id:
                    raise InvalidStateError(
                        "The leader cannot remove themselves. Promote another member first.",
                        team_id=team_id
                    )

                membership = self._membership(team, member_id)
                if not membership or membership.status != MembershipStatus.ACTIVE:
                    raise NotFoundError("Member not found in this team", user_id=member_id)
                self._state_machine(team).require("remove_member")

                team.memberships.remove(membership)
                db.session.flush()
                self._sync_capacity(team, changes)

        self._publish(team, changes)
        return team

    def update(self, team_id: int, leader_id: int, name: str = None, max_members: int = None) -> Team:
        changes = []
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.update', team_id=team_id, user_id=leader_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)
                self._require_leader(team, leader_id, "update the team")
                self._state_machine(team).require("update")

                if name is not None:
                    team.name = self._validate_name(team.event_id, name, exclude_team_id=team.id)
                if max_members is not None:
                    count = len(team.active_members)
                    if isinstance(max_members, int) and not isinstance(max_members, bool) and max_members < count:
                        raise ConflictError(
                            f"Cannot lower the limit to {max_members}; the team has {count} active members",
                            team_id=team_id
                        )
                    team.max_members = max_members
                    self._sync_capacity(team, changes)

        self._publish(team, changes)
        return team

    def regenerate_invite_code(self, team_id: int, leader_id: int) -> Team:
        with self.locks.hold(self.lock_key(team_id)):
            with atomic('teams.regenerate_invite', team_id=team_id, user_id=leader_id):
                team = self._get_team(team_id)
                self.gate.require_active(team.event_id, TEAM_MODULE)
                self._require_leader(team, leader_id, "regenerate the invite code")
                self._state_machine(team).require("regenerate_invite")
                team.invite_code = self._new_invite_code()
        return team

    def lock_roster(self, team_id: int) -> List[Tuple[str, str]]:
        """
        Freeze a recruiting team's roster. Runs inside the caller's unit of
        work (no commit); returns the status changes for the caller to
        publish once it has committed. Already-locked teams are left alone.
        """
        team = self._get_team(team_id)
        changes = []
        if team.status in RECRUITING_STATES:
            self._apply(team, "lock", changes)
            team.invite_code = None
        return changes

    def publish_changes(self, team_id: int, changes: List[Tuple[str, str]]):
        if changes:
            self._publish(self._get_team(team_id), changes)

    def list_teams(self, event_id: int, include_dissolved: bool = False) -> List[Team]:
        identity.get_event(event_id)
        query = Team.query.filter_by(event_id=event_id)
        if not include_dissolved:
            query = query.filter(Team.status != TeamState.DISSOLVED.value)
        return query.order_by(Team.created_at.asc(), Team.id.asc()).all()

    def get_team(self, team_id: int) -> Team:
        return self._get_team(team_id)
