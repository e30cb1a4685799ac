"""
Unit tests for LifecycleCoordinator.
Tests each public/admin operation end to end against the database, including
notification intents, audit records, events and lazy status transitions.
"""
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from gameday.collaborators import Principal
from gameday.ledger import CONFIRMED, WAITLISTED
from gameday.models import db, AuditLog, Game, Notification, Registration
from shared.errors import (
    AuthorizationError,
    CapacityReductionError,
    CancellationNotAllowed,
    IncompleteAssignment,
    NotFoundError,
    RegistrationClosed,
    StateError,
    StorageUnavailable,
    ValidationError,
)
from shared.events import EventType, IntentType
from shared.state_machine import TransitionError
from tests.helpers import game_payload, phone


def intent_types(outcome):
    return [i.type for i in outcome.intents]


class TestCreateGame:
    """Tests for create_game method."""

    def test_create_open_game(self, coordinator, admin):
        game = coordinator.create_game(admin, game_payload()).value

        assert game.status == 'open'
        assert game.created_by == 'admin-1'
        assert len(game.share_token) == 64
        assert game.team_a_name == 'Team A'
        assert float(game.cost_per_player) == 5.0

    def test_create_draft(self, make_game):
        assert make_game(publish=False).status == 'draft'

    def test_unique_identifiers(self, make_game):
        first, second = make_game(), make_game()
        assert first.game_id != second.game_id
        assert first.share_token != second.share_token

    def test_public_principal_rejected(self, coordinator):
        with pytest.raises(AuthorizationError):
            coordinator.create_game(Principal.public(), game_payload())

    def test_start_must_be_in_future(self, coordinator, admin, clock):
        with pytest.raises(ValidationError):
            coordinator.create_game(admin, game_payload(scheduled_start=clock.now().isoformat()))

    def test_min_above_max_rejected(self, coordinator, admin):
        with pytest.raises(ValidationError):
            coordinator.create_game(admin, game_payload(min_players=12, max_players=10))

    def test_audit_and_event(self, app, coordinator, admin):
        game = coordinator.create_game(admin, game_payload()).value

        entry = AuditLog.query.filter_by(action_type='CREATE').one()
        assert entry.actor_id == 'admin-1'
        assert entry.entity_id == game.game_id
        assert entry.ip_address == '10.0.0.1'

        events = coordinator.event_bus.get_recent_events(game.game_id)
        assert events[0].type == EventType.GAME_CREATED


class TestRegister:
    """Tests for register method."""

    def test_confirmed_with_reminder(self, coordinator, sample_game):
        outcome = coordinator.register(sample_game.share_token, "Alex Morgan", "+1 555 123 4567")

        assert outcome.value.status == CONFIRMED
        assert intent_types(outcome) == [IntentType.REGISTRATION_CONFIRMED, IntentType.GAME_REMINDER]
        reminder = outcome.intents[1]
        expected = sample_game.scheduled_start - timedelta(hours=1)
        assert reminder.scheduled_for == expected.isoformat()
        assert reminder.recipient_phone == '+15551234567'

    def test_waitlisted_intent_carries_position(self, coordinator, sample_game, register_players):
        register_players(sample_game, 10)

        outcome = coordinator.register(sample_game.share_token, "Late Comer", phone(50))

        assert outcome.value.status == WAITLISTED
        assert outcome.value.position == 1
        assert intent_types(outcome) == [IntentType.REGISTRATION_WAITLISTED]
        assert outcome.intents[0].payload['position'] == 1

    def test_intents_written_to_outbox(self, coordinator, sample_game):
        coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

        notifications = Notification.query.order_by(Notification.id).all()
        assert [n.message_type for n in notifications] == ['registration_confirmed', 'game_reminder']
        assert 'Sunday Five-a-side' in notifications[0].message_content
        assert notifications[1].scheduled_for is not None

    def test_audited_as_public(self, coordinator, sample_game):
        principal = Principal.public('203.0.113.9', 'Mobile Safari')
        coordinator.register(sample_game.share_token, "Alex Morgan", phone(1), principal=principal)

        entry = AuditLog.query.filter_by(action_type='REGISTER').one()
        assert entry.actor_id == 'public'
        assert entry.ip_address == '203.0.113.9'
        assert entry.details['status'] == CONFIRMED

    def test_unknown_token(self, coordinator, db_session):
        with pytest.raises(NotFoundError):
            coordinator.register('x' * 64, "Alex Morgan", phone(1))

    def test_malformed_token(self, coordinator, db_session):
        with pytest.raises(NotFoundError):
            coordinator.register('short', "Alex Morgan", phone(1))

    def test_draft_not_visible(self, coordinator, make_game):
        game = make_game(publish=False)
        with pytest.raises(NotFoundError):
            coordinator.register(game.share_token, "Alex Morgan", phone(1))

    def test_closed_game(self, coordinator, admin, sample_game):
        coordinator.close_registrations(sample_game.game_id, admin)
        with pytest.raises(RegistrationClosed):
            coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

    def test_beyond_public_grace_period(self, coordinator, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(hours=3))
        with pytest.raises(StateError):
            coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

    def test_storage_failure_surfaces(self, coordinator, sample_game, mocker):
        mocker.patch.object(
            coordinator.ledger, 'admit',
            side_effect=OperationalError("INSERT", {}, Exception("database is locked"))
        )
        with pytest.raises(StorageUnavailable):
            coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))


class TestCancelRegistration:
    """Tests for cancel_registration method."""

    def test_promotion_emits_single_promoted_intent(self, coordinator, full_game):
        """A confirmed player leaves a full game: the waitlisted player is confirmed."""
        outcome = coordinator.cancel_registration(full_game.share_token, phone(4))

        promoted = [i for i in outcome.intents if i.type == IntentType.PROMOTED]
        assert len(promoted) == 1
        assert promoted[0].recipient_phone == phone(11)
        assert outcome.value.promoted.player_phone == phone(11)
        assert coordinator.registration_status(full_game.share_token, phone(11)).value.status == CONFIRMED

    def test_promoted_player_gets_reminder(self, coordinator, full_game):
        outcome = coordinator.cancel_registration(full_game.share_token, phone(1))
        reminders = [i for i in outcome.intents if i.type == IntentType.GAME_REMINDER]
        assert [i.recipient_phone for i in reminders] == [phone(11)]

    def test_promotion_message_links_to_own_registration(self, coordinator, full_game):
        token = Registration.query.filter_by(player_phone=phone(11)).one().registration_token

        outcome = coordinator.cancel_registration(full_game.share_token, phone(2))

        promoted = next(i for i in outcome.intents if i.type == IntentType.PROMOTED)
        assert promoted.payload['manage_url'].endswith(f"/registrations/{token}")
        notification = Notification.query.filter_by(message_type='promoted').one()
        assert token in notification.message_content

    def test_cancel_without_waitlist(self, coordinator, sample_game, register_players):
        register_players(sample_game, 3)

        outcome = coordinator.cancel_registration(sample_game.share_token, phone(2))

        assert intent_types(outcome) == [IntentType.REGISTRATION_CANCELLED]
        assert outcome.value.promoted is None
        assert sample_game.current_players == 2

    def test_event_published(self, coordinator, full_game):
        coordinator.cancel_registration(full_game.share_token, phone(1))

        types = [e.type for e in coordinator.event_bus.get_recent_events(full_game.game_id, count=3)]
        assert EventType.PLAYER_PROMOTED in types
        assert EventType.PLAYER_CANCELLED in types

    def test_round_trip(self, coordinator, sample_game, clock):
        for _ in range(2):
            coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))
            clock.advance(minutes=1)
            coordinator.cancel_registration(sample_game.share_token, phone(1))
        assert coordinator.registration_status(sample_game.share_token, phone(1)).value.registered is False


class TestPublicGame:
    """Tests for get_public_game and registration_status."""

    def test_capacity_figures(self, coordinator, full_game):
        view = coordinator.get_public_game(full_game.share_token).value

        assert view['confirmed_count'] == 10
        assert view['waitlist_count'] == 1
        assert view['spots_available'] == 0
        assert view['is_full'] is True
        assert view['is_registration_open'] is True
        assert 'share_token' not in view
        expected = full_game.scheduled_start - timedelta(hours=2)
        assert view['registration_deadline'] == expected.isoformat()

    def test_status_for_waitlisted_player(self, coordinator, full_game):
        status = coordinator.registration_status(full_game.share_token, phone(11)).value
        assert status.to_dict()['status'] == WAITLISTED
        assert status.position == 1


class TestUpdateGame:
    """Tests for update_game method."""

    def test_capacity_below_confirmed_rejected(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 8)

        with pytest.raises(CapacityReductionError):
            coordinator.update_game(sample_game.game_id, admin, {'max_players': 5})

        db.session.expire_all()
        assert Game.query.filter_by(game_id=sample_game.game_id).one().max_players == 10

    def test_capacity_reduction_to_confirmed_count_allowed(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 6)
        game = coordinator.update_game(sample_game.game_id, admin, {'max_players': 6}).value
        assert game.max_players == 6
        assert game.is_full

    def test_capacity_increase_promotes(self, coordinator, admin, full_game):
        outcome = coordinator.update_game(full_game.game_id, admin, {'max_players': 12})

        assert intent_types(outcome) == [IntentType.PROMOTED]
        assert outcome.intents[0].recipient_phone == phone(11)
        assert full_game.waitlist_count == 0

    def test_significant_reschedule_notifies_players(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 3)
        new_start = sample_game.scheduled_start + timedelta(hours=3)

        outcome = coordinator.update_game(sample_game.game_id, admin, {'scheduled_start': new_start.isoformat()})

        assert intent_types(outcome) == [IntentType.GAME_UPDATED] * 3
        assert outcome.value.scheduled_start == new_start

    def test_minor_reschedule_is_silent(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 3)
        new_start = sample_game.scheduled_start + timedelta(minutes=30)

        outcome = coordinator.update_game(sample_game.game_id, admin, {'scheduled_start': new_start.isoformat()})

        assert outcome.intents == []

    def test_audit_records_previous_values(self, coordinator, admin, sample_game):
        coordinator.update_game(sample_game.game_id, admin, {'title': 'Monday Night'})

        entry = AuditLog.query.filter_by(action_type='UPDATE').one()
        assert entry.details['previous_data']['title'] == 'Sunday Five-a-side'
        assert entry.details['changes']['title'] == 'Monday Night'

    def test_not_owner(self, coordinator, other_admin, sample_game):
        with pytest.raises(AuthorizationError):
            coordinator.update_game(sample_game.game_id, other_admin, {'title': 'Hijacked'})

    def test_unknown_game_not_leaked(self, coordinator, admin, db_session):
        with pytest.raises(AuthorizationError) as exc:
            coordinator.update_game('no-such-game', admin, {'title': 'Nope'})
        assert exc.value.to_dict() == {'error': 'Not permitted', 'code': 'FORBIDDEN'}

    def test_edit_rejected_after_completion(self, coordinator, admin, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(hours=4))
        with pytest.raises(TransitionError):
            coordinator.update_game(sample_game.game_id, admin, {'title': 'Too late'})


class TestLifecycleTransitions:
    """Tests for publish, close, cancel and delete."""

    def test_publish_draft(self, coordinator, admin, make_game):
        game = make_game(publish=False)
        assert coordinator.publish_game(game.game_id, admin).value.status == 'open'

    def test_close_requires_open(self, coordinator, admin, sample_game):
        coordinator.close_registrations(sample_game.game_id, admin)
        with pytest.raises(TransitionError) as exc:
            coordinator.close_registrations(sample_game.game_id, admin)
        assert exc.value.current_status == 'closed'

    def test_cancel_notifies_every_player(self, coordinator, admin, full_game):
        outcome = coordinator.cancel_game(full_game.game_id, admin, reason="Pitch flooded")

        assert outcome.value.status == 'cancelled'
        assert outcome.value.cancellation_reason == "Pitch flooded"
        assert intent_types(outcome) == [IntentType.GAME_CANCELLED] * 11
        assert outcome.intents[0].payload['reason'] == "Pitch flooded"

    def test_cancel_completed_rejected(self, coordinator, admin, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(hours=3))
        with pytest.raises(TransitionError):
            coordinator.cancel_game(sample_game.game_id, admin)

    def test_cancel_registration_on_cancelled_game(self, coordinator, admin, full_game):
        coordinator.cancel_game(full_game.game_id, admin)
        with pytest.raises(StateError):
            coordinator.cancel_registration(full_game.share_token, phone(1))

    def test_delete_cascades(self, coordinator, admin, full_game):
        coordinator.delete_game(full_game.game_id, admin)

        assert Game.query.count() == 0
        assert Registration.query.count() == 0

    def test_delete_rejected_in_progress(self, coordinator, admin, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(minutes=10))
        with pytest.raises(TransitionError):
            coordinator.delete_game(sample_game.game_id, admin)


class TestLazyTransitions:
    """Status follows wall time whenever a game is read."""

    def test_get_game_moves_to_in_progress(self, coordinator, admin, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(minutes=5))

        game = coordinator.get_game(sample_game.game_id, admin).value

        assert game.status == 'in_progress'
        events = coordinator.event_bus.get_recent_events(game.game_id, count=1)
        assert events[0].type == EventType.STATE_CHANGED
        assert events[0].data['automatic'] is True

    def test_list_games_completes_finished_games(self, coordinator, admin, make_game, clock):
        finished = make_game()
        later = make_game(scheduled_start=(clock.now() + timedelta(days=5)).isoformat())
        clock.set(finished.scheduled_start + timedelta(hours=2))

        page = coordinator.list_games(admin).value

        statuses = {g.game_id: g.status for g in page.items}
        assert statuses[finished.game_id] == 'completed'
        assert statuses[later.game_id] == 'open'

    def test_repeated_reads_are_idempotent(self, coordinator, admin, sample_game, clock):
        clock.set(sample_game.scheduled_start + timedelta(minutes=5))
        coordinator.get_game(sample_game.game_id, admin)
        coordinator.get_game(sample_game.game_id, admin)

        changes = [
            e for e in coordinator.event_bus.get_recent_events(sample_game.game_id)
            if e.type == EventType.STATE_CHANGED
        ]
        assert len(changes) == 1


class TestListGames:
    """Tests for list_games filtering and pagination."""

    def test_only_own_games(self, coordinator, admin, other_admin, make_game):
        make_game()
        coordinator.create_game(other_admin, game_payload(title='Not mine'))

        page = coordinator.list_games(admin).value
        assert page.total == 1

    def test_pagination(self, coordinator, admin, make_game, clock):
        for days in (2, 3, 4):
            make_game(scheduled_start=(clock.now() + timedelta(days=days)).isoformat())

        page = coordinator.list_games(admin, page=1, limit=2).value

        assert page.total == 3
        assert len(page.items) == 2
        assert page.items[0].scheduled_start > page.items[1].scheduled_start

    def test_status_and_search_filters(self, coordinator, admin, make_game):
        make_game(title='Wednesday Futsal')
        cancelled = make_game(title='Friday Futsal')
        coordinator.cancel_game(cancelled.game_id, admin)

        assert coordinator.list_games(admin, status='cancelled').value.total == 1
        assert coordinator.list_games(admin, status=['open', 'cancelled']).value.total == 2
        assert coordinator.list_games(admin, search='wednesday').value.total == 1

    def test_unknown_status_filter(self, coordinator, admin, db_session):
        with pytest.raises(ValidationError):
            coordinator.list_games(admin, status='archived')

    @pytest.mark.parametrize("page", ['abc', '1.5', object()])
    def test_non_numeric_page(self, coordinator, admin, db_session, page):
        with pytest.raises(ValidationError) as exc:
            coordinator.list_games(admin, page=page)
        assert exc.value.status_code == 400

    def test_page_below_one_is_first_page(self, coordinator, admin, make_game):
        make_game()
        page = coordinator.list_games(admin, page='0').value
        assert (page.page, page.total, len(page.items)) == (1, 1, 1)

    def test_inverted_date_range(self, coordinator, admin, db_session, clock):
        with pytest.raises(ValidationError):
            coordinator.list_games(
                admin,
                date_from=(clock.now() + timedelta(days=3)).isoformat(),
                date_to=clock.now().isoformat(),
            )


class TestTeamsAndResults:
    """Tests for assign_teams, update_team_names and record_result."""

    def test_random_assignment_includes_waitlist(self, coordinator, admin, full_game):
        outcome = coordinator.assign_teams(full_game.game_id, admin, 'random')

        partition = outcome.value
        assert sorted((len(partition.team_a), len(partition.team_b))) == [5, 6]
        assert full_game.status == 'closed'
        assert full_game.team_assigned_at is not None
        assert full_game.waitlist[0].team_assignment in ('team_a', 'team_b')
        assert all(r.team_assignment != 'none' for r in full_game.active_registrations)
        assert intent_types(outcome) == [IntentType.TEAMS_ASSIGNED] * 11

    def test_manual_mapping_covers_waitlisted_player(self, coordinator, admin, make_game, register_players):
        game = make_game(max_players=4, min_players=2)
        register_players(game, 5)
        ids = [r.id for r in game.active_registrations]
        waitlisted = game.waitlist[0]
        assert waitlisted.id == ids[4]

        mapping = {ids[0]: 'team_a', ids[1]: 'team_b', ids[2]: 'team_a', ids[3]: 'team_b', ids[4]: 'team_a'}
        partition = coordinator.assign_teams(game.game_id, admin, 'manual', mapping).value

        assert (len(partition.team_a), len(partition.team_b)) == (3, 2)
        assert waitlisted.team_assignment == 'team_a'

    def test_manual_mapping_missing_waitlisted_player(self, coordinator, admin, make_game, register_players):
        game = make_game(max_players=4, min_players=2)
        register_players(game, 5)
        confirmed = [r.id for r in game.confirmed_registrations]
        mapping = dict(zip(confirmed, ['team_a', 'team_b', 'team_a', 'team_b']))

        with pytest.raises(IncompleteAssignment):
            coordinator.assign_teams(game.game_id, admin, 'manual', mapping)
        assert game.status == 'open'

    def test_manual_assignment_replaces_previous(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 4)
        ids = [r.id for r in sample_game.active_registrations]
        coordinator.assign_teams(sample_game.game_id, admin, 'random')

        mapping = {str(ids[0]): 'team_a', str(ids[1]): 'team_a', str(ids[2]): 'team_b', str(ids[3]): 'team_b'}
        coordinator.assign_teams(sample_game.game_id, admin, 'manual', mapping)

        sides = [r.team_assignment for r in sample_game.active_registrations]
        assert sides == ['team_a', 'team_a', 'team_b', 'team_b']

    def test_unbalanced_manual_rejected(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 5)
        ids = [r.id for r in sample_game.active_registrations]
        mapping = {i: 'team_a' for i in ids[:4]}
        mapping[ids[4]] = 'team_b'

        with pytest.raises(ValidationError):
            coordinator.assign_teams(sample_game.game_id, admin, 'manual', mapping)
        assert sample_game.status == 'open'

    def test_assignment_rejected_for_draft(self, coordinator, admin, make_game):
        game = make_game(publish=False)
        with pytest.raises(TransitionError):
            coordinator.assign_teams(game.game_id, admin, 'random')

    def test_team_names_in_intents(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 2)
        coordinator.update_team_names(sample_game.game_id, admin, 'Reds', 'Blues')

        outcome = coordinator.assign_teams(sample_game.game_id, admin, 'random')

        assert sorted(i.payload['team'] for i in outcome.intents) == ['Blues', 'Reds']

    def test_team_names_must_differ(self, coordinator, admin, sample_game):
        with pytest.raises(ValidationError):
            coordinator.update_team_names(sample_game.game_id, admin, 'Reds', 'reds')

    def test_record_result_completes_game(self, coordinator, admin, sample_game):
        coordinator.close_registrations(sample_game.game_id, admin)

        result = coordinator.record_result(sample_game.game_id, admin, 3, 2, notes="Close one").value

        assert result.winning_team == 'team_a'
        assert sample_game.status == 'completed'
        assert sample_game.results_recorded_at is not None

    def test_rerecording_updates_result(self, coordinator, admin, sample_game):
        coordinator.close_registrations(sample_game.game_id, admin)
        coordinator.record_result(sample_game.game_id, admin, 3, 2)

        result = coordinator.record_result(sample_game.game_id, admin, 2, 2).value

        assert result.winning_team == 'draw'
        assert AuditLog.query.filter_by(action_type='RECORD_RESULTS').count() == 2

    def test_record_result_rejected_while_open(self, coordinator, admin, sample_game):
        with pytest.raises(TransitionError):
            coordinator.record_result(sample_game.game_id, admin, 1, 0)

    def test_invalid_score(self, coordinator, admin, sample_game):
        with pytest.raises(ValidationError):
            coordinator.record_result(sample_game.game_id, admin, -1, 0)


class TestPayments:
    """Tests for update_payment_status method."""

    def test_mark_paid(self, coordinator, admin, sample_game, clock):
        registration = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1)).value.registration

        outcome = coordinator.update_payment_status(registration.id, admin, 'paid')

        assert outcome.value.payment_status == 'paid'
        assert outcome.value.paid_at == clock.now()
        assert intent_types(outcome) == [IntentType.PAYMENT_RECEIVED]

    def test_refunded_is_read_only(self, coordinator, admin, sample_game):
        registration = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1)).value.registration
        with pytest.raises(ValidationError):
            coordinator.update_payment_status(registration.id, admin, 'refunded')

    def test_not_owner(self, coordinator, other_admin, sample_game):
        registration = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1)).value.registration
        with pytest.raises(AuthorizationError):
            coordinator.update_payment_status(registration.id, other_admin, 'paid')


class TestCollaboratorIsolation:
    """Audit, notification and event failures never undo the mutation."""

    def test_notifier_failure(self, coordinator, sample_game, mocker):
        mocker.patch.object(coordinator.notifier, 'schedule', side_effect=RuntimeError("sms gateway down"))

        outcome = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

        assert outcome.value.status == CONFIRMED
        assert Registration.query.count() == 1

    def test_audit_failure(self, coordinator, admin, sample_game, mocker):
        mocker.patch.object(coordinator.audit, 'record', side_effect=RuntimeError("audit store down"))

        outcome = coordinator.cancel_game(sample_game.game_id, admin)

        assert outcome.value.status == 'cancelled'
        db.session.expire_all()
        assert Game.query.filter_by(game_id=sample_game.game_id).one().status == 'cancelled'

    def test_event_bus_failure(self, coordinator, sample_game, mock_event_bus):
        mock_event_bus.publish.side_effect = ConnectionError("redis down")

        outcome = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

        assert outcome.value.status == CONFIRMED
        assert mock_event_bus.publish.called


class TestSubscribe:
    """Tests for subscribe method."""

    def test_receives_published_events(self, coordinator, admin, sample_game):
        with coordinator.subscribe(sample_game.game_id, admin) as subscription:
            coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))
            # the first read may only consume the subscribe confirmation
            received = [subscription.get(timeout=0.1) for _ in range(5)]
            event = next(e for e in received if e is not None)

        assert event.type == EventType.PLAYER_REGISTERED
        assert subscription.closed

    def test_not_owner(self, coordinator, other_admin, sample_game):
        with pytest.raises(AuthorizationError):
            coordinator.subscribe(sample_game.game_id, other_admin)


def token_of(player_phone):
    return Registration.query.filter_by(player_phone=player_phone).one().registration_token


class TestRegistrationToken:
    """Tests for get_registration_by_token and cancel_by_token."""

    def test_register_returns_personal_token(self, coordinator, sample_game):
        outcome = coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))

        token = outcome.value.to_dict()['registration']['registration_token']
        assert token == token_of(phone(1))
        assert outcome.intents[0].payload['manage_url'].endswith(f"/registrations/{token}")

    def test_view_own_registration(self, coordinator, full_game):
        view = coordinator.get_registration_by_token(token_of(phone(11))).value

        assert view['status'] == WAITLISTED
        assert view['position'] == 1
        assert view['can_cancel'] is True
        assert view['game']['game_id'] == full_game.game_id
        assert 'registration_token' not in view['registration']
        assert view['hours_until_start'] > 0

    @pytest.mark.parametrize("token", ['short', 'x' * 64, None])
    def test_unknown_or_malformed_token(self, coordinator, db_session, token):
        with pytest.raises(NotFoundError):
            coordinator.get_registration_by_token(token)

    def test_cancel_promotes_waitlisted(self, coordinator, full_game):
        outcome = coordinator.cancel_by_token(token_of(phone(4)), reason="Injured")

        assert outcome.value.promoted.player_phone == phone(11)
        assert IntentType.PROMOTED in intent_types(outcome)
        entry = AuditLog.query.filter_by(action_type='TOKEN_CANCEL').one()
        assert entry.game_id == full_game.game_id
        assert entry.details['reason'] == "Injured"

    def test_token_is_dead_after_cancel(self, coordinator, sample_game):
        coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))
        token = token_of(phone(1))
        coordinator.cancel_by_token(token)

        with pytest.raises(NotFoundError):
            coordinator.get_registration_by_token(token)

    def test_cancel_within_cutoff(self, coordinator, sample_game, clock):
        coordinator.register(sample_game.share_token, "Alex Morgan", phone(1))
        clock.set(sample_game.scheduled_start - timedelta(hours=1))

        with pytest.raises(CancellationNotAllowed):
            coordinator.cancel_by_token(token_of(phone(1)))
        assert sample_game.current_players == 1

    def test_cancel_on_cancelled_game(self, coordinator, admin, full_game):
        token = token_of(phone(1))
        coordinator.cancel_game(full_game.game_id, admin)

        with pytest.raises(CancellationNotAllowed):
            coordinator.cancel_by_token(token)


class TestAuditLog:
    """Tests for list_audit_log method."""

    def test_scoped_to_own_games(self, coordinator, admin, other_admin, sample_game, register_players):
        register_players(sample_game, 2)
        theirs = coordinator.create_game(other_admin, game_payload(title='Not mine')).value
        coordinator.register(theirs.share_token, "Somebody", phone(90))

        page = coordinator.list_audit_log(admin).value

        assert page.total == 3
        assert {e.game_id for e in page.items} == {sample_game.game_id}
        assert [e.action_type for e in page.items] == ['REGISTER', 'REGISTER', 'CREATE']

    def test_filters(self, coordinator, admin, sample_game, register_players, clock):
        register_players(sample_game, 2)

        assert coordinator.list_audit_log(admin, action_type='register').value.total == 2
        assert coordinator.list_audit_log(admin, entity_type='game').value.total == 1
        assert coordinator.list_audit_log(admin, game_id='other').value.total == 0
        past = (clock.now() - timedelta(days=1)).isoformat()
        assert coordinator.list_audit_log(admin, date_to=past).value.total == 0

    def test_pagination(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 4)

        page = coordinator.list_audit_log(admin, page=2, limit=2).value

        assert page.total == 5
        assert len(page.items) == 2
        assert page.to_dict()['has_more'] is True
        assert set(page.to_dict()) == {'entries', 'total', 'page', 'limit', 'has_more'}

    def test_public_principal_rejected(self, coordinator, db_session):
        with pytest.raises(AuthorizationError):
            coordinator.list_audit_log(Principal.public())


class TestNotifications:
    """Tests for list_notifications method."""

    def test_outbox_for_own_games(self, coordinator, admin, other_admin, sample_game, register_players):
        register_players(sample_game, 2)

        assert coordinator.list_notifications(admin).value.total == 4
        assert coordinator.list_notifications(other_admin).value.total == 0

    def test_filters(self, coordinator, admin, sample_game, register_players):
        register_players(sample_game, 2)

        reminders = coordinator.list_notifications(admin, message_type='game_reminder').value
        assert reminders.total == 2
        assert all(n.scheduled_for is not None for n in reminders.items)
        assert coordinator.list_notifications(admin, delivery_status='sent').value.total == 0
        assert coordinator.list_notifications(admin, game_id=sample_game.game_id).value.total == 4

    def test_invalid_page(self, coordinator, admin, db_session):
        with pytest.raises(ValidationError):
            coordinator.list_notifications(admin, page='two')


class TestPaymentOverview:
    """Tests for payment_overview method."""

    def test_totals_by_status(self, coordinator, admin, sample_game, register_players):
        results = register_players(sample_game, 3)
        coordinator.update_payment_status(results[0].registration.id, admin, 'paid')
        coordinator.update_payment_status(results[1].registration.id, admin, 'failed')

        summary = coordinator.payment_overview(admin).value

        assert (summary['total_pending'], summary['total_paid'], summary['total_failed']) == (1, 1, 1)
        assert summary['paid_amount'] == 5.0
        assert summary['pending_amount'] == 5.0
        assert summary['overdue_payments'] == []

    def test_overdue_after_due_window(self, coordinator, admin, sample_game, register_players, clock):
        register_players(sample_game, 2)
        clock.set(sample_game.scheduled_start + timedelta(hours=24, days=2, minutes=1))

        summary = coordinator.payment_overview(admin, game_id=sample_game.game_id).value

        overdue = summary['overdue_payments']
        assert [p['player_phone'] for p in overdue] == [phone(1), phone(2)]
        assert all(p['days_overdue'] == 2 for p in overdue)
        assert overdue[0]['amount_due'] == 5.0

    def test_most_overdue_first(self, coordinator, admin, make_game, register_players, clock):
        early = make_game()
        late = make_game(scheduled_start=(clock.now() + timedelta(days=5)).isoformat())
        register_players(late, 1, start=1)
        register_players(early, 1, start=2)
        clock.set(late.scheduled_start + timedelta(days=3))

        overdue = coordinator.payment_overview(admin).value['overdue_payments']

        assert [p['game_id'] for p in overdue] == [early.game_id, late.game_id]
        assert overdue[0]['days_overdue'] > overdue[1]['days_overdue']

    def test_other_admins_game(self, coordinator, other_admin, sample_game):
        with pytest.raises(AuthorizationError):
            coordinator.payment_overview(other_admin, game_id=sample_game.game_id)
