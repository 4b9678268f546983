from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required

from eventhub.http import json_body, require_fields, acting_user_id, parse_datetime, parse_entrant

bp = Blueprint('competitions', __name__)


# ==================== Competition CRUD ====================

@bp.route('/api/v1/events/<int:event_id>/competitions', methods=['POST'])
@login_required
def create_competition(event_id: int):
    data = json_body()
    require_fields(data, 'name', 'start_time')

    competition = current_app.competitions.create(
        event_id,
        acting_user_id(),
        name=data['name'],
        start_time=parse_datetime(data['start_time'], 'start_time'),
        kind=data.get('kind', 'tournament'),
        format=data.get('format', 'individual'),
        max_participants=data.get('max_participants'),
        prize=data.get('prize'),
        entry_fee=data.get('entry_fee', 0),
        rules=data.get('rules')
    )
    return jsonify({'message': 'Competition created', 'competition': competition.to_dict()}), 201


@bp.route('/api/v1/events/<int:event_id>/competitions', methods=['GET'])
def list_competitions(event_id: int):
    """List competitions with optional filtering."""
    limit = request.args.get('limit', 20, type=int)
    offset = request.args.get('offset', 0, type=int)

    competitions = current_app.competitions.list_competitions(
        event_id,
        status=request.args.get('status'),
        kind=request.args.get('kind'),
        limit=limit,
        offset=offset
    )
    return jsonify({
        'competitions': [c.to_dict() for c in competitions],
        'count': len(competitions),
        'limit': limit,
        'offset': offset
    })


@bp.route('/api/v1/competitions/<int:competition_id>', methods=['GET'])
def get_competition(competition_id: int):
    competition = current_app.competitions.get_competition(competition_id)
    return jsonify(competition.to_dict(include_participants=True))


# ==================== Lifecycle ====================

@bp.route('/api/v1/competitions/<int:competition_id>/register', methods=['POST'])
@login_required
def register(competition_id: int):
    """Register the acting user, another user (managers only) or a team."""
    entrant = parse_entrant(json_body())
    participant = current_app.competitions.register(competition_id, acting_user_id(), entrant)
    return jsonify({'message': 'Registration confirmed', 'participant': participant.to_dict()}), 201


@bp.route('/api/v1/competitions/<int:competition_id>/start', methods=['POST'])
@login_required
def start(competition_id: int):
    data = json_body()
    competition = current_app.competitions.start(competition_id, acting_user_id(), seed=data.get('seed'))
    return jsonify({'message': 'Competition started', 'competition': competition.to_dict()})


@bp.route('/api/v1/competitions/<int:competition_id>/matches/<match_id>', methods=['PATCH'])
@login_required
def report_result(competition_id: int, match_id: str):
    data = json_body()
    require_fields(data, 'winner_id')

    match = current_app.competitions.report_result(
        competition_id, acting_user_id(), match_id, data['winner_id'], score=data.get('score')
    )
    return jsonify({'message': 'Result recorded', 'match': match})


@bp.route('/api/v1/competitions/<int:competition_id>/advance', methods=['POST'])
@login_required
def advance_round(competition_id: int):
    competition = current_app.competitions.advance_round(competition_id, acting_user_id())
    return jsonify({'message': 'Next round started', 'bracket': competition.bracket})


@bp.route('/api/v1/competitions/<int:competition_id>/finish', methods=['POST'])
@login_required
def finish(competition_id: int):
    data = json_body()
    competition = current_app.competitions.finish(
        competition_id, acting_user_id(), data.get('final_ranking', [])
    )
    return jsonify({'message': 'Competition finished', 'competition': competition.to_dict()})


@bp.route('/api/v1/competitions/<int:competition_id>/cancel', methods=['POST'])
@login_required
def cancel(competition_id: int):
    data = json_body()
    competition = current_app.competitions.cancel(competition_id, acting_user_id(), reason=data.get('reason'))
    return jsonify({'message': 'Competition cancelled', 'competition': competition.to_dict()})


@bp.route('/api/v1/competitions/<int:competition_id>/ranking', methods=['GET'])
def ranking(competition_id: int):
    standings = current_app.competitions.ranking(competition_id)
    return jsonify({'ranking': standings, 'count': len(standings)})
