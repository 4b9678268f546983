from flask import Blueprint, jsonify, current_app
from flask_login import current_user, login_required

from shared.errors import ValidationError
from eventhub import identity
from eventhub.http import json_body

bp = Blueprint('modules', __name__, url_prefix='/api/v1/events/<int:event_id>/modules')


def _require_manager(event_id: int, action: str):
    event = identity.get_event(event_id)
    identity.require_event_manager(current_user, event, action)


def _module_list(event_id: int):
    records = current_app.modules.list_for_event(event_id)
    return jsonify({
        'event_id': event_id,
        'modules': [r.to_dict() for r in records],
        'count': len(records)
    })


@bp.route('', methods=['GET'])
@login_required
def list_event_modules(event_id: int):
    _require_manager(event_id, "view module settings")
    return _module_list(event_id)


@bp.route('', methods=['PUT'])
@login_required
def update_event_modules(event_id: int):
    """Update several modules at once; any invalid entry rejects the batch."""
    _require_manager(event_id, "change module settings")
    data = json_body()
    if 'modules' not in data:
        raise ValidationError("modules is required", field='modules')

    current_app.modules.update_many(event_id, data['modules'])
    return _module_list(event_id)


@bp.route('/<module_name>', methods=['PUT'])
@login_required
def update_event_module(event_id: int, module_name: str):
    _require_manager(event_id, "change module settings")
    data = json_body()

    record = current_app.modules.update(
        event_id, module_name, data.get('active'), data.get('settings')
    )
    return jsonify({'message': f"Module '{module_name}' updated", 'module': record.to_dict()})


@bp.route('/reset', methods=['POST'])
@login_required
def reset_event_modules(event_id: int):
    _require_manager(event_id, "reset module settings")
    current_app.modules.reset_to_default(event_id)
    return _module_list(event_id)
