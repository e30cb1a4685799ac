import logging
import os
import random

import redis
from flask import Flask, current_app, request, jsonify, Response, stream_with_context

from shared.clock import Clock, SystemClock
from shared.errors import GameError, ValidationError
from shared.pubsub import RedisEventBus
from .collaborators import Principal
from .config import config
from .coordinator import LifecycleCoordinator
from .models import db
from .rate_limiter import NoopRateLimiter, RedisRateLimiter
from .teams import TeamAssignmentEngine

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, redis_client=None, clock: Clock = None,
               rng: random.Random = None) -> Flask:
    """Application factory for the game lifecycle service."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # Initialize extensions
    db.init_app(app)

    if redis_client is None:
        redis_client = redis.from_url(app.config['REDIS_URL'], decode_responses=True)
    app.redis = redis_client

    # Initialize services
    app.coordinator = LifecycleCoordinator(
        clock=clock or SystemClock(),
        team_engine=TeamAssignmentEngine(rng),
        event_bus=RedisEventBus(redis_client),
        settings=app.config,
    )
    if app.config['RATE_LIMIT_ENABLED']:
        app.rate_limiter = RedisRateLimiter(redis_client)
    else:
        app.rate_limiter = NoopRateLimiter()

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_api_routes(app)

    from .routes import public
    app.register_blueprint(public.bp)

    logger.info("Game service started with %s configuration", config_name)
    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(GameError)
    def handle_game_error(error: GameError):
        if error.status_code >= 500:
            logger.error("%s: %s", error.code, error.message)
        return jsonify(error.to_dict()), error.status_code


def admin_principal() -> Principal:
    """Principal for the authenticated admin; identity is issued upstream."""
    actor_id = request.headers.get(current_app.config["PRINCIPAL_HEADER"])
    return Principal(
        actor_id=actor_id or '',
        ip_address=client_ip(),
        user_agent=request.headers.get('User-Agent'),
    )


def client_ip() -> str:
    forwarded = request.headers.get('X-Forwarded-For', '')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def event_stream(subscription):
    """Server-sent events for one game subscription."""
    def generate():
        with subscription:
            yield f"data: {{\"type\":\"connected\",\"game_id\":\"{subscription.game_id}\"}}\n\n"
            for event in subscription:
                if event is not None:
                    yield f"data: {event.to_json()}\n\n"
                else:
                    yield ": keepalive\n\n"

    return Response(stream_with_context(generate()), mimetype='text/event-stream', headers={
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no'
    })


def register_api_routes(app: Flask):
    """Register admin API routes."""

    # ==================== Games ====================

    @app.route('/api/v1/games', methods=['GET'])
    def api_list_games():
        """List the caller's games with optional filtering."""
        outcome = app.coordinator.list_games(
            admin_principal(),
            status=request.args.get('status'),
            date_from=request.args.get('date_from'),
            date_to=request.args.get('date_to'),
            search=request.args.get('search'),
            page=request.args.get('page'),
            limit=request.args.get('limit'),
        )
        return jsonify(outcome.value.to_dict())

    @app.route('/api/v1/games', methods=['POST'])
    def api_create_game():
        """Create a new game."""
        data = json_body()
        outcome = app.coordinator.create_game(admin_principal(), data, publish=data.get('publish', True) is not False)
        return jsonify({
            'message': 'Game created',
            'game': outcome.value.to_dict()
        }), 201

    @app.route('/api/v1/games/<game_id>', methods=['GET'])
    def api_get_game(game_id: str):
        """Get game details including registrations."""
        outcome = app.coordinator.get_game(game_id, admin_principal())
        return jsonify(outcome.value.to_dict(include_registrations=True))

    @app.route('/api/v1/games/<game_id>', methods=['PATCH'])
    def api_update_game(game_id: str):
        outcome = app.coordinator.update_game(game_id, admin_principal(), json_body())
        return jsonify({
            'message': 'Game updated',
            'game': outcome.value.to_dict(),
            'notifications': len(outcome.intents)
        })

    @app.route('/api/v1/games/<game_id>', methods=['DELETE'])
    def api_delete_game(game_id: str):
        """Delete a game and its registrations (not while it is being played)."""
        app.coordinator.delete_game(game_id, admin_principal())
        return jsonify({'message': 'Game deleted'})

    # ==================== Lifecycle ====================

    @app.route('/api/v1/games/<game_id>/publish', methods=['POST'])
    def api_publish_game(game_id: str):
        outcome = app.coordinator.publish_game(game_id, admin_principal())
        return jsonify({'message': 'Game published', 'game': outcome.value.to_dict()})

    @app.route('/api/v1/games/<game_id>/close', methods=['POST'])
    def api_close_registrations(game_id: str):
        outcome = app.coordinator.close_registrations(game_id, admin_principal())
        return jsonify({'message': 'Registrations closed', 'game': outcome.value.to_dict()})

    @app.route('/api/v1/games/<game_id>/cancel', methods=['POST'])
    def api_cancel_game(game_id: str):
        data = json_body()
        outcome = app.coordinator.cancel_game(game_id, admin_principal(), reason=data.get('reason'))
        return jsonify({
            'message': 'Game cancelled',
            'game': outcome.value.to_dict(),
            'affected_players': len(outcome.intents)
        })

    # ==================== Teams & Results ====================

    @app.route('/api/v1/games/<game_id>/teams', methods=['POST'])
    def api_assign_teams(game_id: str):
        """Assign registered players to teams, randomly or from an explicit mapping."""
        data = json_body()
        outcome = app.coordinator.assign_teams(
            game_id,
            admin_principal(),
            method=data.get('method', 'random'),
            manual_mapping=data.get('assignments'),
        )
        return jsonify({'message': 'Teams assigned', 'teams': outcome.value.to_dict()})

    @app.route('/api/v1/games/<game_id>/team-names', methods=['PATCH'])
    def api_update_team_names(game_id: str):
        data = json_body()
        outcome = app.coordinator.update_team_names(
            game_id, admin_principal(), data.get('team_a_name'), data.get('team_b_name')
        )
        return jsonify({
            'team_a_name': outcome.value.team_a_name,
            'team_b_name': outcome.value.team_b_name
        })

    @app.route('/api/v1/games/<game_id>/result', methods=['POST'])
    def api_record_result(game_id: str):
        data = json_body()
        outcome = app.coordinator.record_result(
            game_id,
            admin_principal(),
            data.get('team_a_score'),
            data.get('team_b_score'),
            notes=data.get('notes'),
        )
        return jsonify({'message': 'Result recorded', 'result': outcome.value.to_dict()})

    @app.route('/api/v1/registrations/<int:registration_id>/payment', methods=['PATCH'])
    def api_update_payment(registration_id: int):
        data = json_body()
        outcome = app.coordinator.update_payment_status(
            registration_id, admin_principal(), data.get('payment_status')
        )
        return jsonify({'registration': outcome.value.to_dict()})

    # ==================== Reporting ====================

    @app.route('/api/v1/audit', methods=['GET'])
    def api_list_audit_log():
        """Audit trail for the caller's games and actions."""
        outcome = app.coordinator.list_audit_log(
            admin_principal(),
            action_type=request.args.get('action_type'),
            entity_type=request.args.get('entity_type'),
            game_id=request.args.get('game_id'),
            date_from=request.args.get('date_from'),
            date_to=request.args.get('date_to'),
            page=request.args.get('page'),
            limit=request.args.get('limit'),
        )
        return jsonify(outcome.value.to_dict())

    @app.route('/api/v1/notifications', methods=['GET'])
    def api_list_notifications():
        """Notification outbox for the caller's games."""
        outcome = app.coordinator.list_notifications(
            admin_principal(),
            game_id=request.args.get('game_id'),
            message_type=request.args.get('message_type'),
            delivery_status=request.args.get('delivery_status'),
            date_from=request.args.get('date_from'),
            date_to=request.args.get('date_to'),
            page=request.args.get('page'),
            limit=request.args.get('limit'),
        )
        return jsonify(outcome.value.to_dict())

    @app.route('/api/v1/payments', methods=['GET'])
    def api_payment_overview():
        outcome = app.coordinator.payment_overview(admin_principal(), game_id=request.args.get('game_id'))
        return jsonify(outcome.value)

    # ==================== Real-time Events (SSE) ====================

    @app.route('/api/v1/games/<game_id>/events')
    def api_game_events(game_id: str):
        """SSE endpoint for lifecycle events on one game."""
        return event_stream(app.coordinator.subscribe(game_id, admin_principal()))

    # ==================== Health Check ====================

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            app.redis.ping()
            redis_ok = True
        except Exception:
            redis_ok = False

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception:
            db.session.rollback()
            db_ok = False

        status = 'healthy' if (redis_ok and db_ok) else 'unhealthy'
        code = 200 if status == 'healthy' else 503

        return jsonify({
            'status': status,
            'redis': 'connected' if redis_ok else 'disconnected',
            'database': 'connected' if db_ok else 'disconnected'
        }), code
