import logging

from flask import Blueprint, request, jsonify, current_app

from shared.errors import RateLimitExceeded, ValidationError
from ..app import client_ip, event_stream, json_body
from ..collaborators import Principal

logger = logging.getLogger(__name__)

bp = Blueprint('public', __name__, url_prefix='/api/v1/public')


def public_principal() -> Principal:
    return Principal.public(client_ip(), request.headers.get('User-Agent'))


def enforce_rate_limit(kind: str):
    """Fixed-window limit per client IP and path."""
    limit = current_app.config[f'{kind.upper()}_RATE_LIMIT']
    window = current_app.config[f'{kind.upper()}_RATE_WINDOW']
    key = f"{client_ip()}:{request.path}"
    if not current_app.rate_limiter.allow(kind, key, limit=limit, window_seconds=window):
        logger.warning("Rate limit hit for %s on %s", client_ip(), request.path)
        raise RateLimitExceeded()


# --- Routes ---

@bp.route('/games/<share_token>')
def get_game(share_token):
    """Game info, capacity and registration deadline for the share link."""
    outcome = current_app.coordinator.get_public_game(share_token)
    return jsonify(outcome.value)


@bp.route('/games/<share_token>/register', methods=['POST'])
def register(share_token):
    enforce_rate_limit('register')
    data = json_body()
    outcome = current_app.coordinator.register(
        share_token,
        data.get('player_name'),
        data.get('player_phone'),
        principal=public_principal(),
    )
    admission = outcome.value
    message = (
        "You're registered!" if admission.position is None
        else f"You're on the waitlist at position {admission.position}"
    )
    return jsonify({'message': message, **admission.to_dict()}), 201


@bp.route('/games/<share_token>/cancel', methods=['POST'])
def cancel(share_token):
    enforce_rate_limit('cancel')
    data = json_body()
    outcome = current_app.coordinator.cancel_registration(
        share_token,
        data.get('player_phone'),
        principal=public_principal(),
        reason=data.get('reason'),
    )
    return jsonify({'message': 'Registration cancelled', **outcome.value.to_dict()})


@bp.route('/games/<share_token>/status')
def registration_status(share_token):
    outcome = current_app.coordinator.registration_status(share_token, request.args.get('phone'))
    return jsonify(outcome.value.to_dict())


@bp.route('/registrations/<registration_token>')
def my_registration(registration_token):
    """The registrant's own page, reached from the link in their messages."""
    enforce_rate_limit('lookup')
    outcome = current_app.coordinator.get_registration_by_token(registration_token)
    return jsonify(outcome.value)


@bp.route('/registrations/<registration_token>/cancel', methods=['POST'])
def cancel_my_registration(registration_token):
    enforce_rate_limit('cancel')
    data = json_body()
    if data.get('confirm') is not True:
        raise ValidationError("Set confirm to true to cancel this registration")
    outcome = current_app.coordinator.cancel_by_token(
        registration_token,
        principal=public_principal(),
        reason=data.get('reason'),
    )
    return jsonify({'message': 'Registration cancelled', **outcome.value.to_dict()})


@bp.route('/games/<share_token>/events')
def game_events(share_token):
    """SSE stream of lifecycle events for players holding the link."""
    return event_stream(current_app.coordinator.subscribe_public(share_token))
