"""Request parsing helpers shared by the API blueprints."""
from datetime import datetime

from flask import request
from flask_login import current_user

from shared.errors import ValidationError
from .models import Individual, TeamEntry


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require_fields(data: dict, *names):
    missing = [name for name in names if data.get(name) in (None, '')]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", fields=missing)


def acting_user_id() -> int:
    return current_user.id


def parse_datetime(value, field: str) -> datetime:
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO 8601 date and time", field=field)
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        raise ValidationError(f"{field} must be an ISO 8601 date and time", field=field)
    # Stored naive, in UTC.
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def parse_entrant(data: dict):
    """Read `{"user_id": ...}` or `{"team_id": ...}`; defaults to the acting user."""
    user_id = data.get('user_id')
    team_id = data.get('team_id')
    if user_id is not None and team_id is not None:
        raise ValidationError("Give either user_id or team_id, not both")
    if team_id is not None:
        if not isinstance(team_id, int) or isinstance(team_id, bool):
            raise ValidationError("team_id must be an integer", field='team_id')
        return TeamEntry(team_id)
    if user_id is None:
        user_id = acting_user_id()
    if not isinstance(user_id, int) or isinstance(user_id, bool):
        raise ValidationError("user_id must be an integer", field='user_id')
    return Individual(user_id)
