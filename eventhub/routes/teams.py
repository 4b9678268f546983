from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required

from eventhub.http import json_body, require_fields, acting_user_id

bp = Blueprint('teams', __name__)


@bp.route('/api/v1/events/<int:event_id>/teams', methods=['POST'])
@login_required
def create_team(event_id: int):
    data = json_body()
    require_fields(data, 'name')

    team = current_app.teams.create(
        event_id, acting_user_id(), data['name'], max_members=data.get('max_members')
    )
    return jsonify({'message': 'Team created', 'team': team.to_dict()}), 201


@bp.route('/api/v1/events/<int:event_id>/teams', methods=['GET'])
def list_teams(event_id: int):
    include_dissolved = request.args.get('include_dissolved', 'false').lower() == 'true'
    teams = current_app.teams.list_teams(event_id, include_dissolved=include_dissolved)
    return jsonify({
        'teams': [t.to_dict(include_members=False) for t in teams],
        'count': len(teams)
    })


@bp.route('/api/v1/teams/join', methods=['POST'])
@login_required
def join_team():
    data = json_body()
    require_fields(data, 'invite_code')

    team = current_app.teams.join(data['invite_code'], acting_user_id())
    return jsonify({'message': 'Joined the team', 'team': team.to_dict()})


@bp.route('/api/v1/teams/<int:team_id>', methods=['GET'])
def get_team(team_id: int):
    return jsonify(current_app.teams.get_team(team_id).to_dict())


@bp.route('/api/v1/teams/<int:team_id>', methods=['PATCH'])
@login_required
def update_team(team_id: int):
    data = json_body()
    team = current_app.teams.update(
        team_id, acting_user_id(), name=data.get('name'), max_members=data.get('max_members')
    )
    return jsonify({'message': 'Team updated', 'team': team.to_dict()})


@bp.route('/api/v1/teams/<int:team_id>', methods=['DELETE'])
@login_required
def dissolve_team(team_id: int):
    team = current_app.teams.dissolve(team_id, acting_user_id())
    return jsonify({'message': 'Team dissolved', 'team': team.to_dict()})


@bp.route('/api/v1/teams/<int:team_id>/leave', methods=['POST'])
@login_required
def leave_team(team_id: int):
    current_app.teams.leave(team_id, acting_user_id())
    return jsonify({'message': 'You left the team'})


@bp.route('/api/v1/teams/<int:team_id>/promote/<int:member_id>', methods=['PATCH'])
@login_required
def promote_member(team_id: int, member_id: int):
    team = current_app.teams.promote(team_id, acting_user_id(), member_id)
    return jsonify({'message': 'Member promoted to leader', 'team': team.to_dict()})


@bp.route('/api/v1/teams/<int:team_id>/members/<int:member_id>', methods=['DELETE'])
@login_required
def remove_member(team_id: int, member_id: int):
    team = current_app.teams.remove_member(team_id, acting_user_id(), member_id)
    return jsonify({'message': 'Member removed from the team', 'team': team.to_dict()})


@bp.route('/api/v1/teams/<int:team_id>/regenerate-invite', methods=['POST'])
@login_required
def regenerate_invite(team_id: int):
    team = current_app.teams.regenerate_invite_code(team_id, acting_user_id())
    return jsonify({'message': 'New invite code generated', 'invite_code': team.invite_code})
