"""Unit tests for the capture session state machine."""

from __future__ import annotations

import pytest

from spacerelay.exceptions import InvalidTransitionError
from spacerelay.models.session import (
    Credentials,
    Session,
    SessionState,
    STATE_TRANSITIONS,
    can_transition,
)

HAPPY_PATH = [
    SessionState.AUTHENTICATING,
    SessionState.IDENTITY_VERIFICATION,
    SessionState.AUTHENTICATING,
    SessionState.AUTHENTICATED,
    SessionState.JOINING_ROOM,
    SessionState.IN_ROOM,
    SessionState.CAPTURING,
    SessionState.RELAYING,
    SessionState.TEARDOWN,
    SessionState.CLOSED,
]


class TestTransitions:
    def test_happy_path(self):
        session = Session()
        for state in HAPPY_PATH:
            session.transition(state)
        assert session.state == SessionState.CLOSED
        assert len(session.history) == len(HAPPY_PATH)
        assert session.history[0] == (SessionState.IDLE, SessionState.AUTHENTICATING)

    def test_skipping_states_rejected(self):
        session = Session()
        with pytest.raises(InvalidTransitionError):
            session.transition(SessionState.IN_ROOM)
        assert session.state == SessionState.IDLE

    @pytest.mark.parametrize("state", [s for s in SessionState if s not in (SessionState.CLOSED, SessionState.TEARDOWN)])
    def test_teardown_reachable_from_every_active_state(self, state):
        assert can_transition(state, SessionState.TEARDOWN)

    @pytest.mark.parametrize(
        "state",
        [s for s in SessionState if s not in (SessionState.CLOSED, SessionState.TEARDOWN, SessionState.FAILED)],
    )
    def test_failed_reachable_from_working_states(self, state):
        assert can_transition(state, SessionState.FAILED)

    def test_closed_is_terminal(self):
        for state in SessionState:
            assert not can_transition(SessionState.CLOSED, state)

    def test_failed_then_teardown_then_closed(self):
        session = Session()
        session.transition(SessionState.AUTHENTICATING)
        session.fail("boom")
        assert session.state == SessionState.FAILED
        assert session.last_error == "boom"
        session.transition(SessionState.TEARDOWN)
        session.transition(SessionState.CLOSED)
        assert session.state == SessionState.CLOSED

    def test_fail_during_teardown_keeps_state(self):
        session = Session()
        session.transition(SessionState.TEARDOWN)
        session.fail(RuntimeError("late"))
        assert session.state == SessionState.TEARDOWN
        assert session.last_error == "late"

    def test_every_state_has_a_transition_entry(self):
        assert set(STATE_TRANSITIONS) == set(SessionState)


class TestSession:
    def test_defaults(self):
        session = Session(room_url="https://twitter.com/i/spaces/1")
        assert session.state == SessionState.IDLE
        assert len(session.session_id) == 12
        assert session.recording is False

    def test_to_dict_omits_handles(self):
        session = Session(endpoint="ws://localhost:8080/audio")
        session.browser = object()
        data = session.to_dict()
        assert data["endpoint"] == "ws://localhost:8080/audio"
        assert data["state"] == "idle"
        assert "browser" not in data

    def test_timestamp_slug(self):
        session = Session()
        assert session.timestamp_slug.endswith("Z")
        assert "T" in session.timestamp_slug


class TestCredentials:
    def test_verification_value_prefers_secondary(self):
        creds = Credentials(identifier="listener", secret="pw", secondary_identifier="me@example.com")
        assert creds.verification_value == "me@example.com"

    def test_verification_value_falls_back_to_identifier(self):
        creds = Credentials(identifier="listener", secret="pw")
        assert creds.verification_value == "listener"

    def test_secret_not_in_repr(self):
        creds = Credentials(identifier="listener", secret="pw-123")
        assert "pw-123" not in repr(creds)
