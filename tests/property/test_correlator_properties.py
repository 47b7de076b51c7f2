"""Property-based tests for cross-context correlation.

Property 4: State Correlation
- A callback matches only the session whose state it carries
- Any other state is rejected and leaves every session open
- A session can be matched at most once
"""

from __future__ import annotations

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from oidc_probe.channel import Envelope
from oidc_probe.correlator import CrossContextCorrelator
from oidc_probe.errors import OriginMismatchError, StateMismatchError
from oidc_probe.models import AuthSession, CallbackPayload

ORIGIN = "http://127.0.0.1:8765"

state_strategy = st.text(
    alphabet="ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_",
    min_size=1,
    max_size=32,
)

origin_strategy = st.builds(
    lambda scheme, host, port: f"{scheme}://{host}:{port}",
    st.sampled_from(["http", "https"]),
    st.sampled_from(["127.0.0.1", "localhost", "evil.example", "idp.example.com"]),
    st.integers(min_value=1, max_value=65535),
)


def make_correlator(states: list[str]) -> CrossContextCorrelator:
    correlator = CrossContextCorrelator(ORIGIN)
    for state in states:
        correlator.register(
            AuthSession(
                state=state,
                client_id="abc",
                redirect_uri=f"{ORIGIN}/oidc/callback",
                scope="openid",
            )
        )
    return correlator


class TestStateCorrelation:
    """Property tests for state correlation."""

    @given(states=st.lists(state_strategy, min_size=1, max_size=8, unique=True), data=st.data())
    @settings(max_examples=100)
    def test_matches_own_session(self, states: list[str], data: st.DataObject) -> None:
        """
        Property 4: State Correlation
        A callback carrying an open state consumes exactly that session.
        """
        correlator = make_correlator(states)
        chosen = data.draw(st.sampled_from(states))

        session = correlator.match(CallbackPayload(code="c", state=chosen))

        assert session.state == chosen
        assert correlator.open_count == len(states) - 1
        with pytest.raises(StateMismatchError):
            correlator.match(CallbackPayload(code="c", state=chosen))

    @given(
        states=st.lists(state_strategy, min_size=1, max_size=8, unique=True),
        received=state_strategy,
    )
    @settings(max_examples=100)
    def test_unknown_state_rejected(self, states: list[str], received: str) -> None:
        """
        Property 4: State Correlation
        A callback whose state differs from every open session is rejected
        and no session is consumed.
        """
        assume(received not in states)
        correlator = make_correlator(states)

        with pytest.raises(StateMismatchError):
            correlator.match(CallbackPayload(code="c", state=received))

        assert correlator.open_count == len(states)

    @given(state=state_strategy, origin=origin_strategy)
    @settings(max_examples=100)
    def test_foreign_origin_rejected(self, state: str, origin: str) -> None:
        """
        Property 4: State Correlation
        Messages from any origin other than the initiating one are rejected,
        even when they carry a valid state.
        """
        assume(origin != ORIGIN)
        correlator = make_correlator([state])

        with pytest.raises(OriginMismatchError):
            correlator.dispatch(
                Envelope(origin=origin, data={"type": "auth_callback", "code": "c", "state": state})
            )

        assert correlator.is_open(state)
