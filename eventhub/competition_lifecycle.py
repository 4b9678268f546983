import copy
import logging
import random
from contextlib import ExitStack
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import update

from shared.errors import (
    NotFoundError, ForbiddenError, ConflictError, InvalidStateError, PreconditionError,
    ValidationError,
)
from shared.events import (
    competition_state_changed_event, match_result_event, round_started_event,
)
from shared.locks import KeyedLocks
from shared.pubsub import ActivityPublisher
from shared.state_machine import CompetitionState, CompetitionStateMachine, TeamState
from . import bracket as brackets
from . import identity
from .models import (
    db, Competition, CompetitionParticipant, CompetitionKind, CompetitionFormat,
    ParticipantStatus, TeamMembership, MembershipStatus, Entrant, Individual, TeamEntry,
)
from .module_gate import ModuleGate
from .team_formation import TeamFormation
from .transactions import atomic

logger = logging.getLogger(__name__)

TOURNAMENT_MODULE = 'tournament'
MIN_PARTICIPANTS_TO_START = 2
MAX_COMPETITION_NAME_LENGTH = 200


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class CompetitionLifecycle:
    """
    Competitions inside an event, from registration through bracket play to
    a final ranking.

    Status changes go through CompetitionStateMachine; anything the table
    does not allow is rejected with a TransitionError. Registrations are
    serialized per competition and the participant counter only moves
    through a guarded UPDATE, so the competition can never be over-filled.
    """

    def __init__(
        self,
        gate: ModuleGate,
        teams: TeamFormation,
        locks: KeyedLocks = None,
        publisher: ActivityPublisher = None,
        rng: random.Random = None,
        clock: Callable[[], datetime] = datetime.utcnow
    ):
        self.gate = gate
        self.teams = teams
        self.locks = locks or KeyedLocks()
        self.publisher = publisher or ActivityPublisher()
        self.rng = rng or random.Random()
        self.clock = clock

    @staticmethod
    def lock_key(competition_id: int) -> str:
        return f"competition:{competition_id}"

    def _get_competition(self, competition_id: int) -> Competition:
        competition = db.session.get(Competition, competition_id) if competition_id is not None else None
        if not competition:
            raise NotFoundError("Competition not found", competition_id=competition_id)
        return competition

    @staticmethod
    def _state_machine(competition: Competition) -> CompetitionStateMachine:
        return CompetitionStateMachine.from_state_string(competition.status)

    def _load_for_manager(self, competition_id: int, acting_user_id: int, action: str,
                          staff_allowed: bool = False) -> Competition:
        competition = self._get_competition(competition_id)
        self.gate.require_active(competition.event_id, TOURNAMENT_MODULE)
        event = identity.get_event(competition.event_id)
        user = identity.get_user(acting_user_id)
        if staff_allowed:
            identity.require_event_staff(user, event, action)
        else:
            identity.require_event_manager(user, event, action)
        return competition

    def _publish_state_change(self, competition: Competition, from_state: str, to_state: str):
        logger.info(f"Competition {competition.id} {from_state} -> {to_state}")
        self.publisher.publish(competition_state_changed_event(
            competition.event_id, competition.id, from_state, to_state
        ))

    # Creation and registration

    def create(
        self,
        event_id: int,
        acting_user_id: int,
        name: str,
        start_time: datetime,
        kind: str = CompetitionKind.TOURNAMENT.value,
        format: str = CompetitionFormat.INDIVIDUAL.value,
        max_participants: Optional[int] = None,
        prize: Optional[str] = None,
        entry_fee: float = 0,
        rules: Optional[str] = None
    ) -> Competition:
        with atomic('competitions.create', event_id=event_id, user_id=acting_user_id):
            self.gate.require_active(event_id, TOURNAMENT_MODULE)
            event = identity.get_event(event_id)
            identity.require_event_manager(identity.get_user(acting_user_id), event, "create competitions")

            if not isinstance(name, str) or not name.strip():
                raise ValidationError("Competition name is required", field='name')
            if len(name.strip()) > MAX_COMPETITION_NAME_LENGTH:
                raise ValidationError(
                    f"Competition name must be at most {MAX_COMPETITION_NAME_LENGTH} characters",
                    field='name'
                )
            if not isinstance(start_time, datetime):
                raise ValidationError("start_time must be a date and time", field='start_time')
            if entry_fee is None:
                entry_fee = 0
            if not _is_number(entry_fee) or entry_fee < 0:
                raise ValidationError("entry_fee must be a non-negative number", field='entry_fee')
            if max_participants is None:
                max_participants = self.gate.resolved_settings(event_id, TOURNAMENT_MODULE).max_participants

            competition = Competition(
                event_id=event_id,
                name=name.strip(),
                kind=kind,
                format=format,
                status=CompetitionState.REGISTRATION.value,
                max_participants=max_participants,
                current_participant_count=0,
                start_time=start_time,
                prize=prize,
                entry_fee=entry_fee,
                rules=rules
            )
            db.session.add(competition)

        logger.info(f"Competition {competition.id} '{competition.name}' created in event {event_id}")
        return competition

    def _check_entrant(self, competition: Competition, user, entrant: Entrant):
        if competition.format == CompetitionFormat.INDIVIDUAL:
            if not isinstance(entrant, Individual):
                raise ValidationError("This competition takes individual participants", field='entrant')
            identity.get_user(entrant.user_id)
            if entrant.user_id != user.id:
                identity.require_event_manager(
                    user, identity.get_event(competition.event_id), "register other users"
                )
            duplicate = CompetitionParticipant.query.filter_by(
                competition_id=competition.id, user_id=entrant.user_id
            ).first()
            if duplicate:
                raise ConflictError("User is already registered", user_id=entrant.user_id)
            return

        if not isinstance(entrant, TeamEntry):
            raise ValidationError("This competition takes teams", field='entrant')
        team = self.teams.get_team(entrant.team_id)
        if team.event_id != competition.event_id:
            raise ValidationError("Team belongs to another event", team_id=team.id)
        if team.status == TeamState.DISSOLVED:
            raise InvalidStateError("Team has been dissolved", team_id=team.id)

        membership = TeamMembership.query.filter_by(
            team_id=team.id, user_id=user.id, status=MembershipStatus.ACTIVE.value
        ).first()
        if not membership:
            raise ForbiddenError("Only active team members may register the team", team_id=team.id)

        duplicate = CompetitionParticipant.query.filter_by(
            competition_id=competition.id, team_id=team.id
        ).first()
        if duplicate:
            raise ConflictError("Team is already registered", team_id=team.id)

    def register(self, competition_id: int, acting_user_id: int, entrant: Entrant) -> CompetitionParticipant:
        with self.locks.hold(self.lock_key(competition_id)):
            with atomic('competitions.register', competition_id=competition_id, user_id=acting_user_id):
                competition = self._get_competition(competition_id)
                self.gate.require_active(competition.event_id, TOURNAMENT_MODULE)
                user = identity.get_user(acting_user_id)

                self._state_machine(competition).require("register")
                if competition.current_participant_count >= competition.max_participants:
                    raise ConflictError("Competition is full", competition_id=competition_id)

                self._check_entrant(competition, user, entrant)

                participant = CompetitionParticipant.for_entrant(
                    competition.id, entrant, status=ParticipantStatus.REGISTERED.value
                )
                db.session.add(participant)

                result = db.session.execute(
                    update(Competition)
                    .where(Competition.id == competition.id)
                    .where(Competition.current_participant_count < Competition.max_participants)
                    .values(current_participant_count=Competition.current_participant_count + 1)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConflictError("Competition is full", competition_id=competition_id)

        logger.debug(f"Registered {entrant} in competition {competition_id}")
        return participant

    # Play

    @staticmethod
    def _entered_team_ids(competition_id: int) -> List[int]:
        rows = db.session.query(CompetitionParticipant.team_id).filter(
            CompetitionParticipant.competition_id == competition_id,
            CompetitionParticipant.team_id.isnot(None)
        ).order_by(CompetitionParticipant.team_id).all()
        return [team_id for team_id, in rows]

    def start(self, competition_id: int, acting_user_id: int, seed: Optional[int] = None) -> Competition:
        team_changes = {}
        with self.locks.hold(self.lock_key(competition_id)), ExitStack() as rosters:
            # Team rosters stay locked until the start commits.
            for team_id in self._entered_team_ids(competition_id):
                rosters.enter_context(self.teams.locks.hold(self.teams.lock_key(team_id)))

            with atomic('competitions.start', competition_id=competition_id, user_id=acting_user_id):
                competition = self._load_for_manager(competition_id, acting_user_id, "start competitions")
                sm = self._state_machine(competition)
                sm.require("start")
                if competition.current_participant_count < MIN_PARTICIPANTS_TO_START:
                    raise PreconditionError(
                        "Insufficient participants to start the competition",
                        required=MIN_PARTICIPANTS_TO_START,
                        registered=competition.current_participant_count
                    )

                registered = [
                    p for p in competition.participants
                    if p.status == ParticipantStatus.REGISTERED
                ]
                rng = random.Random(seed) if seed is not None else self.rng
                competition.bracket = brackets.build_first_round([p.id for p in registered], rng)
                from_state = sm.state.value
                competition.status = sm.transition("start").value

                for participant in registered:
                    participant.status = ParticipantStatus.CONFIRMED.value
                    if participant.team_id is not None:
                        team_changes[participant.team_id] = self.teams.lock_roster(participant.team_id)

        self._publish_state_change(competition, from_state, competition.status)
        self.publisher.publish(round_started_event(
            competition.event_id, competition.id, 1, len(competition.bracket['matches'])
        ))
        for team_id, changes in team_changes.items():
            self.teams.publish_changes(team_id, changes)
        return competition

    def report_result(self, competition_id: int, acting_user_id: int, match_id: str,
                      winner_id: int, score=None) -> Dict:
        with self.locks.hold(self.lock_key(competition_id)):
            with atomic('competitions.report_result', competition_id=competition_id, match_id=match_id):
                competition = self._load_for_manager(
                    competition_id, acting_user_id, "report results", staff_allowed=True
                )
                self._state_machine(competition).require("report_result")

                bracket = copy.deepcopy(competition.bracket or {})
                match = brackets.find_match(bracket, match_id)
                if match is None:
                    raise NotFoundError("Match not found", match_id=match_id)
                if match.get('participant2') is None:
                    raise InvalidStateError("A bye has no result to report", match_id=match_id)
                if match.get('round') != bracket.get('current_round'):
                    raise InvalidStateError(
                        "Results of earlier rounds can no longer change", match_id=match_id
                    )
                sides = [match.get('participant1'), match.get('participant2')]
                if winner_id is None or winner_id not in sides:
                    raise ValidationError("Winner is not part of this match", match_id=match_id)

                match['winner_id'] = winner_id
                match['score'] = score
                match['completed'] = True
                competition.bracket = bracket

        self.publisher.publish(match_result_event(
            competition.event_id, competition.id, match_id, winner_id, match['round']
        ))
        return match

    def advance_round(self, competition_id: int, acting_user_id: int) -> Competition:
        with self.locks.hold(self.lock_key(competition_id)):
            with atomic('competitions.advance_round', competition_id=competition_id):
                competition = self._load_for_manager(
                    competition_id, acting_user_id, "advance rounds", staff_allowed=True
                )
                sm = self._state_machine(competition)
                sm.require("advance")

                bracket = copy.deepcopy(competition.bracket or {})
                current = bracket.get('current_round', 1)
                if not brackets.round_complete(bracket):
                    raise PreconditionError(
                        f"Every match of round {current} needs a result first", round=current
                    )
                if len(brackets.round_winners(bracket)) <= 1:
                    raise PreconditionError("The bracket already has a winner", round=current)

                matches = brackets.next_round(bracket)
                competition.bracket = bracket
                sm.transition("advance")

        self.publisher.publish(round_started_event(
            competition.event_id, competition.id, bracket['current_round'], len(matches)
        ))
        return competition

    def finish(self, competition_id: int, acting_user_id: int, final_ranking: List[Dict]) -> Competition:
        with self.locks.hold(self.lock_key(competition_id)):
            with atomic('competitions.finish', competition_id=competition_id):
                competition = self._load_for_manager(competition_id, acting_user_id, "finish competitions")
                sm = self._state_machine(competition)
                sm.require("finish")

                if not isinstance(final_ranking, (list, tuple)):
                    raise ValidationError("final_ranking must be a list", field='final_ranking')
                for entry in final_ranking:
                    self._apply_ranking(competition, entry)

                from_state = sm.state.value
                competition.status = sm.transition("finish").value
                competition.end_time = self.clock()

        self._publish_state_change(competition, from_state, competition.status)
        return competition

    @staticmethod
    def _apply_ranking(competition: Competition, entry):
        if not isinstance(entry, dict):
            raise ValidationError("Each ranking entry must be an object", field='final_ranking')
        participant_id = entry.get('participant_id')
        position = entry.get('position')
        score = entry.get('score', 0)
        if score is None:
            score = 0
        if not _is_int(participant_id):
            raise ValidationError("participant_id must be an integer", field='participant_id')
        if not _is_int(position) or position < 1:
            raise ValidationError("position must be a positive integer", field='position')
        if not _is_number(score):
            raise ValidationError("score must be a number", field='score')

        participant = CompetitionParticipant.query.filter_by(
            id=participant_id, competition_id=competition.id
        ).first()
        if not participant:
            raise NotFoundError("Participant not found in this competition", participant_id=participant_id)

        participant.final_rank = position
        participant.total_score = score
        participant.status = (
            ParticipantStatus.WINNER.value if position == 1 else ParticipantStatus.ELIMINATED.value
        )

    def cancel(self, competition_id: int, acting_user_id: int, reason: Optional[str] = None) -> Competition:
        with self.locks.hold(self.lock_key(competition_id)):
            with atomic('competitions.cancel', competition_id=competition_id):
                competition = self._load_for_manager(competition_id, acting_user_id, "cancel competitions")
                sm = self._state_machine(competition)
                sm.require("cancel")

                note = f"Cancellation reason: {reason or 'Not provided'}"
                competition.rules = f"{competition.rules}\n\n{note}" if competition.rules else note

                from_state = sm.state.value
                competition.status = sm.transition("cancel").value
                for participant in competition.participants:
                    participant.status = ParticipantStatus.WITHDRAWN.value

        self._publish_state_change(competition, from_state, competition.status)
        return competition

    # Reads

    def ranking(self, competition_id: int) -> List[Dict]:
        competition = self._get_competition(competition_id)
        participants = CompetitionParticipant.query.filter_by(
            competition_id=competition.id
        ).order_by(
            CompetitionParticipant.final_rank.is_(None),
            CompetitionParticipant.final_rank.asc(),
            CompetitionParticipant.total_score.desc(),
            CompetitionParticipant.registered_at.asc(),
            CompetitionParticipant.id.asc()
        ).all()

        standings = []
        for i, participant in enumerate(participants):
            row = participant.to_dict()
            row['position'] = participant.final_rank or i + 1
            standings.append(row)
        return standings

    def list_competitions(self, event_id: int, status: Optional[str] = None, kind: Optional[str] = None,
                          limit: int = 20, offset: int = 0) -> List[Competition]:
        identity.get_event(event_id)
        query = Competition.query.filter_by(event_id=event_id)
        if status is not None:
            if status not in [s.value for s in CompetitionState]:
                raise ValidationError(f"Unknown competition status '{status}'", field='status')
            query = query.filter_by(status=status)
        if kind is not None:
            if kind not in [k.value for k in CompetitionKind]:
                raise ValidationError(f"Unknown competition kind '{kind}'", field='kind')
            query = query.filter_by(kind=kind)
        return query.order_by(Competition.start_time.asc(), Competition.id.asc()).offset(offset).limit(limit).all()

    def get_competition(self, competition_id: int) -> Competition:
        return self._get_competition(competition_id)
