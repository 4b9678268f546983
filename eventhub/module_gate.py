import logging
from typing import Iterable, List, Optional

from shared.errors import ConflictError, ForbiddenError, ValidationError
from shared.events import module_updated_event, modules_reset_event
from shared.pubsub import ActivityPublisher
from . import identity
from .models import db, ModuleSetting
from .module_registry import (
    MODULES, ModuleDefinition, ModuleSettings, get_module, default_settings,
    coerce_settings, parse_settings, settings_to_dict,
)
from .transactions import atomic

logger = logging.getLogger(__name__)

# Competitive features stay off for new events until an organizer opts in.
FORCED_INACTIVE = ('tournament', 'team_mode')


class ModuleGate:
    """
    Decides which modules are switched on for an event and with what settings.

    Persisted ModuleSetting rows override the registry defaults. A module
    with no row is inactive, so events created before a module existed never
    get it switched on implicitly.
    """

    def __init__(self, publisher: ActivityPublisher = None):
        self.publisher = publisher or ActivityPublisher()

    @staticmethod
    def initially_active(definition: ModuleDefinition) -> bool:
        return definition.default_enabled and definition.name not in FORCED_INACTIVE

    def _record(self, event_id: int, module: str) -> Optional[ModuleSetting]:
        return ModuleSetting.query.filter_by(event_id=event_id, module_name=module).first()

    def add_defaults(self, event_id: int):
        """Stage a default record for every module in the current session (no commit)."""
        for definition in MODULES:
            db.session.add(ModuleSetting(
                event_id=event_id,
                module_name=definition.name,
                active=self.initially_active(definition),
                settings=default_settings(definition.name)
            ))

    def initialize(self, event_id: int) -> List[ModuleSetting]:
        with atomic('modules.initialize', event_id=event_id):
            identity.get_event(event_id)
            if ModuleSetting.query.filter_by(event_id=event_id).count():
                raise ConflictError("Modules already initialized for this event", event_id=event_id)
            self.add_defaults(event_id)
        return self.list_for_event(event_id)

    def reset_to_default(self, event_id: int) -> List[ModuleSetting]:
        with atomic('modules.reset', event_id=event_id):
            identity.get_event(event_id)
            ModuleSetting.query.filter_by(event_id=event_id).delete()
            self.add_defaults(event_id)
        self.publisher.publish(modules_reset_event(event_id))
        return self.list_for_event(event_id)

    def ensure_records(self, event_id: int) -> List[str]:
        """Create inactive default records for modules the event has no row for."""
        with atomic('modules.ensure_records', event_id=event_id):
            identity.get_event(event_id)
            existing = {
                r.module_name for r in ModuleSetting.query.filter_by(event_id=event_id).all()
            }
            created = [m.name for m in MODULES if m.name not in existing]
            for name in created:
                db.session.add(ModuleSetting(
                    event_id=event_id,
                    module_name=name,
                    active=False,
                    settings=default_settings(name)
                ))
        if created:
            logger.info(f"Backfilled modules {created} for event {event_id}")
        return created

    def is_active(self, event_id: int, module: str) -> bool:
        record = self._record(event_id, module)
        return bool(record and record.active)

    def require_active(self, event_id: int, module: str):
        if not self.is_active(event_id, module):
            raise ForbiddenError(f"Module '{module}' is not active for this event", module=module)

    def resolved_settings(self, event_id: int, module: str) -> ModuleSettings:
        get_module(module)
        record = self._record(event_id, module)
        return coerce_settings(module, record.settings if record else None)

    def _apply(self, event_id: int, module: str, active: Optional[bool], settings) -> ModuleSetting:
        get_module(module)
        if active is not None and not isinstance(active, bool):
            raise ValidationError("active must be a boolean", module=module)

        record = self._record(event_id, module)
        stored = record.settings if record else None
        if settings is not None:
            parsed = parse_settings(module, settings, base=stored)
        else:
            parsed = coerce_settings(module, stored)

        if record is None:
            record = ModuleSetting(event_id=event_id, module_name=module, active=False)
            db.session.add(record)
        if active is not None:
            record.active = active
        record.settings = settings_to_dict(parsed)
        return record

    def update(self, event_id: int, module: str, active: Optional[bool], settings=None) -> ModuleSetting:
        with atomic('modules.update', event_id=event_id, module=module):
            identity.get_event(event_id)
            record = self._apply(event_id, module, active, settings)
        self.publisher.publish(module_updated_event(event_id, module, record.active))
        return record

    def update_many(self, event_id: int, updates: Iterable[dict]) -> List[ModuleSetting]:
        """Apply several module updates; any invalid entry rejects all of them."""
        if not isinstance(updates, (list, tuple)):
            raise ValidationError("modules must be a list")

        with atomic('modules.update_many', event_id=event_id):
            identity.get_event(event_id)
            records = []
            for item in updates:
                if not isinstance(item, dict) or 'module' not in item:
                    raise ValidationError("Each update needs a 'module' name")
                records.append(self._apply(
                    event_id, item['module'], item.get('active'), item.get('settings')
                ))

        for record in records:
            self.publisher.publish(module_updated_event(event_id, record.module_name, record.active))
        return records

    def list_for_event(self, event_id: int) -> List[ModuleSetting]:
        return ModuleSetting.query.filter_by(event_id=event_id).order_by(ModuleSetting.module_name).all()
