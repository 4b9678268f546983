from flask import Blueprint, request, jsonify, current_app
from flask_login import login_required

from eventhub.http import json_body, require_fields, acting_user_id

bp = Blueprint('queue', __name__)


@bp.route('/api/v1/events/<int:event_id>/queue', methods=['POST'])
@login_required
def submit_song(event_id: int):
    """Request a song for the event's queue."""
    data = json_body()
    require_fields(data, 'song_id')

    entry = current_app.queue.submit(event_id, acting_user_id(), data['song_id'])
    return jsonify({'message': 'Song added to the queue', 'entry': entry.to_dict()}), 201


@bp.route('/api/v1/events/<int:event_id>/queue', methods=['GET'])
def list_queue(event_id: int):
    status = request.args.get('status')
    entries = current_app.queue.list_queue(event_id, status=status)
    return jsonify({
        'entries': [e.to_dict() for e in entries],
        'count': len(entries)
    })


@bp.route('/api/v1/queue/<int:entry_id>/play', methods=['PUT'])
@login_required
def mark_played(entry_id: int):
    data = json_body()
    entry = current_app.queue.mark_played(entry_id, acting_user_id(), score=data.get('score'))
    return jsonify({'message': 'Song marked as played', 'entry': entry.to_dict()})


@bp.route('/api/v1/queue/<int:entry_id>', methods=['DELETE'])
@login_required
def remove_entry(entry_id: int):
    current_app.queue.remove(entry_id, acting_user_id())
    return jsonify({'message': 'Song removed from the queue'})
