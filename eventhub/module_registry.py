"""
Catalog of the optional feature modules an event can switch on.

Each module carries a description, whether it is enabled by default, and a
typed settings class. Settings travel through the rest of the system as
instances of those classes; they are only flattened to plain dicts for
storage and JSON responses.
"""
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, asdict
from typing import List, Type, Union

from shared.errors import NotFoundError, ValidationError


@dataclass(frozen=True)
class QueueSettings:
    max_songs_per_user: int = field(default=3, metadata={'min': 1, 'max': 100})
    cooldown_minutes: int = field(default=5, metadata={'min': 0, 'max': 1440})
    allow_duplicates: bool = False


@dataclass(frozen=True)
class TournamentSettings:
    max_participants: int = field(default=16, metadata={'min': 2, 'max': 128})
    bracket_type: str = field(default='single_elimination', metadata={
        'choices': ('single_elimination', 'double_elimination', 'round_robin')
    })
    auto_start: bool = False


@dataclass(frozen=True)
class XpSystemSettings:
    xp_per_song: int = field(default=10, metadata={'min': 0})
    level_multiplier: float = field(default=1.5, metadata={'min': 0})
    bonus_xp_tournament: int = field(default=25, metadata={'min': 0})


@dataclass(frozen=True)
class TeamModeSettings:
    max_team_size: int = field(default=4, metadata={'min': 2, 'max': 4})
    allow_solo: bool = True
    team_formation_time: int = field(default=300, metadata={'min': 0})


@dataclass(frozen=True)
class MusicRequestsSettings:
    allow_requests: bool = True
    max_requests_per_user: int = field(default=2, metadata={'min': 0})
    request_cooldown: int = field(default=60, metadata={'min': 0})


@dataclass(frozen=True)
class LeaderboardSettings:
    show_top: int = field(default=10, metadata={'min': 1, 'max': 500})
    update_interval: int = field(default=300, metadata={'min': 1})
    show_xp: bool = True


@dataclass(frozen=True)
class ChatSettings:
    enabled: bool = False
    max_message_length: int = field(default=200, metadata={'min': 1, 'max': 5000})
    allow_emojis: bool = True


@dataclass(frozen=True)
class VotingSettings:
    enabled: bool = False
    voting_time: int = field(default=30, metadata={'min': 1})
    require_majority: bool = True


ModuleSettings = Union[
    QueueSettings, TournamentSettings, XpSystemSettings, TeamModeSettings,
    MusicRequestsSettings, LeaderboardSettings, ChatSettings, VotingSettings,
]


@dataclass(frozen=True)
class ModuleDefinition:
    name: str
    description: str
    default_enabled: bool
    settings_type: Type

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'description': self.description,
            'default_enabled': self.default_enabled,
        }


MODULES = (
    ModuleDefinition('queue', 'Song request queue', True, QueueSettings),
    ModuleDefinition('tournament', 'Tournaments and competitions', False, TournamentSettings),
    ModuleDefinition('xp_system', 'Experience points and levels', True, XpSystemSettings),
    ModuleDefinition('team_mode', 'Team play', False, TeamModeSettings),
    ModuleDefinition('music_requests', 'Music requests', True, MusicRequestsSettings),
    ModuleDefinition('leaderboard', 'Leaderboard', True, LeaderboardSettings),
    ModuleDefinition('chat', 'Real-time chat', False, ChatSettings),
    ModuleDefinition('voting', 'Audience voting', False, VotingSettings),
)

_BY_NAME = {m.name: m for m in MODULES}


def list_modules() -> List[dict]:
    return [m.to_dict() for m in MODULES]


def module_names() -> List[str]:
    return [m.name for m in MODULES]


def get_module(name: str) -> ModuleDefinition:
    definition = _BY_NAME.get(name)
    if definition is None:
        raise NotFoundError(f"Unknown module '{name}'", module=name)
    return definition


def default_settings(name: str) -> dict:
    return asdict(get_module(name).settings_type())


def settings_to_dict(settings: ModuleSettings) -> dict:
    return asdict(settings)


def _check_value(module: str, attr, value):
    label = f"{module}.{attr.name}"

    if attr.type is bool:
        if not isinstance(value, bool):
            raise ValidationError(f"{label} must be a boolean", field=label)
        return value

    if attr.type in (int, float):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError(f"{label} must be a number", field=label)
        if attr.type is int:
            if isinstance(value, float) and not value.is_integer():
                raise ValidationError(f"{label} must be an integer", field=label)
            value = int(value)
        else:
            value = float(value)
        low = attr.metadata.get('min')
        high = attr.metadata.get('max')
        if low is not None and value < low:
            raise ValidationError(f"{label} must be at least {low}", field=label)
        if high is not None and value > high:
            raise ValidationError(f"{label} must be at most {high}", field=label)
        return value

    if not isinstance(value, str):
        raise ValidationError(f"{label} must be a string", field=label)
    choices = attr.metadata.get('choices')
    if choices and value not in choices:
        raise ValidationError(f"{label} must be one of {', '.join(choices)}", field=label)
    return value


def coerce_settings(name: str, stored=None) -> ModuleSettings:
    """
    Build typed settings from a stored blob, falling back to the default for
    every key that is missing, unknown or ill-typed. Never raises for a
    registered module.
    """
    settings_type = get_module(name).settings_type
    values = asdict(settings_type())
    if isinstance(stored, Mapping):
        for attr in fields(settings_type):
            if attr.name not in stored:
                continue
            try:
                values[attr.name] = _check_value(name, attr, stored[attr.name])
            except ValidationError:
                continue
    return settings_type(**values)


def parse_settings(name: str, raw, base=None) -> ModuleSettings:
    """
    Validate a settings payload at the API boundary.

    The payload may be partial; it is merged over `base` (stored settings,
    read leniently) or the module defaults. Unknown keys, wrong types and
    out-of-range values are rejected.
    """
    settings_type = get_module(name).settings_type
    if not isinstance(raw, Mapping):
        raise ValidationError(f"Settings for '{name}' must be an object", module=name)

    known = {attr.name: attr for attr in fields(settings_type)}
    unknown = sorted(set(raw) - set(known))
    if unknown:
        raise ValidationError(
            f"Unknown settings for '{name}': {', '.join(unknown)}",
            module=name
        )

    values = asdict(coerce_settings(name, base))
    for key, value in raw.items():
        values[key] = _check_value(name, known[key], value)
    return settings_type(**values)
