import logging
import os

import redis
from flask import Flask, request, jsonify, current_app
from flask_login import LoginManager, current_user, login_required
from flask_migrate import Migrate
from werkzeug.exceptions import HTTPException

from shared.errors import ServiceError, ForbiddenError
from shared.locks import KeyedLocks
from shared.pubsub import ActivityPublisher
from .codes import generate_event_code
from .competition_lifecycle import CompetitionLifecycle
from .config import config
from .http import json_body, require_fields
from . import identity
from .models import db, User, UserRole, Event, Song
from .module_gate import ModuleGate
from .module_registry import list_modules
from .queue_admission import QueueAdmissionController
from .team_formation import TeamFormation
from .transactions import atomic

logger = logging.getLogger(__name__)

login_manager = LoginManager()
migrate = Migrate()


@login_manager.user_loader
def load_user(user_id):
    return db.session.get(User, int(user_id))


@login_manager.request_loader
def load_user_from_request(req):
    """Resolve the acting user from the X-User-Id header."""
    raw = req.headers.get('X-User-Id', '')
    if not (raw.isascii() and raw.isdigit()):
        return None
    return db.session.get(User, int(raw))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required', 'kind': 'unauthorized'}), 401


def create_app(config_name: str = None, config_overrides: dict = None) -> Flask:
    """Application factory for the event hub API."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    redis_url = app.config.get('REDIS_URL')
    app.redis = redis.from_url(redis_url, decode_responses=True) if redis_url else None

    # Initialize services
    app.locks = KeyedLocks(
        app.redis,
        wait_seconds=app.config['LOCK_WAIT_SECONDS'],
        ttl_seconds=app.config['LOCK_TTL_SECONDS']
    )
    app.publisher = ActivityPublisher(app.redis, log_size=app.config['ACTIVITY_LOG_SIZE'])
    app.modules = ModuleGate(app.publisher)
    app.queue = QueueAdmissionController(app.modules, app.locks, app.publisher)
    app.teams = TeamFormation(app.modules, app.locks, app.publisher)
    app.competitions = CompetitionLifecycle(app.modules, app.teams, app.locks, app.publisher)

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_api_routes(app)

    from .routes import modules, queue, teams, competitions
    app.register_blueprint(modules.bp)
    app.register_blueprint(queue.bp)
    app.register_blueprint(teams.bp)
    app.register_blueprint(competitions.bp)

    logger.info(f"Event hub started ({config_name}, redis={'on' if app.redis else 'off'})")
    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(ServiceError)
    def handle_service_error(error: ServiceError):
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException):
        return jsonify({'error': error.description, 'kind': error.name.lower().replace(' ', '_')}), error.code


def register_api_routes(app: Flask):
    """Register users, events, songs and the module catalog."""

    @app.route('/health')
    def health():
        return jsonify({'status': 'healthy', 'redis': app.redis is not None})

    # ==================== Users ====================

    @app.route('/api/v1/users', methods=['POST'])
    def api_create_user():
        """Create a user. Only admins may create anything other than players."""
        data = json_body()
        require_fields(data, 'display_name')

        role = data.get('role', UserRole.PLAYER.value)
        if role != UserRole.PLAYER.value:
            if not current_user.is_authenticated or not current_user.is_admin:
                raise ForbiddenError("Only admins may create staff, organizer or admin users")

        with atomic('users.create'):
            user = User(display_name=str(data['display_name']).strip(), role=role)
            if data.get('password'):
                user.set_password(data['password'])
            db.session.add(user)

        return jsonify({'message': 'User created', 'user': user.to_dict()}), 201

    @app.route('/api/v1/users/<int:user_id>', methods=['GET'])
    def api_get_user(user_id: int):
        return jsonify(identity.get_user(user_id).to_dict())

    # ==================== Events ====================

    @app.route('/api/v1/events', methods=['POST'])
    @login_required
    def api_create_event():
        """Create an event with every module at its default setting."""
        data = json_body()
        require_fields(data, 'name')
        identity.require_role(current_user, [UserRole.ORGANIZER, UserRole.ADMIN], "create events")

        with atomic('events.create', user_id=current_user.id):
            event = Event(
                name=str(data['name']).strip(),
                code=generate_event_code(),
                organizer_id=current_user.id
            )
            db.session.add(event)
            db.session.flush()
            current_app.modules.add_defaults(event.id)

        return jsonify({
            'message': 'Event created',
            'event': event.to_dict(),
            'modules': [m.to_dict() for m in current_app.modules.list_for_event(event.id)]
        }), 201

    @app.route('/api/v1/events/<int:event_id>', methods=['GET'])
    def api_get_event(event_id: int):
        return jsonify(identity.get_event(event_id).to_dict())

    @app.route('/api/v1/events/<int:event_id>/activity', methods=['GET'])
    def api_event_activity(event_id: int):
        """Most recent activity for an event, newest first."""
        identity.get_event(event_id)
        count = request.args.get('count', 50, type=int)
        events = app.publisher.recent(event_id, count=count)
        return jsonify({
            'activity': [e.to_dict() for e in events],
            'count': len(events)
        })

    # ==================== Songs ====================

    @app.route('/api/v1/songs', methods=['POST'])
    @login_required
    def api_create_song():
        data = json_body()
        require_fields(data, 'title', 'artist')
        identity.require_role(
            current_user, [UserRole.STAFF, UserRole.ORGANIZER, UserRole.ADMIN], "add songs"
        )

        with atomic('songs.create', user_id=current_user.id):
            song = Song(title=str(data['title']).strip(), artist=str(data['artist']).strip())
            db.session.add(song)

        return jsonify({'message': 'Song added', 'song': song.to_dict()}), 201

    @app.route('/api/v1/songs/<int:song_id>/approve', methods=['POST'])
    @login_required
    def api_approve_song(song_id: int):
        identity.require_role(current_user, [UserRole.ORGANIZER, UserRole.ADMIN], "approve songs")

        with atomic('songs.approve', song_id=song_id):
            song = identity.get_song(song_id)
            song.approved = True

        return jsonify({'message': 'Song approved', 'song': song.to_dict()})

    # ==================== Module catalog ====================

    @app.route('/api/v1/modules', methods=['GET'])
    def api_list_modules():
        modules = list_modules()
        return jsonify({'modules': modules, 'count': len(modules)})

    @app.route('/api/v1/users/me', methods=['GET'])
    @login_required
    def api_me():
        return jsonify(current_user.to_dict())
