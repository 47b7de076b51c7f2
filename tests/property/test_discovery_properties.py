"""Property-based tests for discovery URL normalization.

Property 1: Discovery URL Normalization
- The result always ends with exactly one well-known suffix
- Normalizing twice changes nothing
- Trailing slashes on the issuer do not matter
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from oidc_probe.discovery import WELL_KNOWN_PATH, normalize_discovery_url

host_strategy = st.from_regex(r"[a-z][a-z0-9]{0,15}(\.[a-z][a-z0-9]{0,10}){1,3}", fullmatch=True)

path_strategy = st.lists(
    st.from_regex(r"[A-Za-z0-9_-]{1,12}", fullmatch=True),
    max_size=4,
).map(lambda segments: "".join("/" + s for s in segments))

issuer_strategy = st.builds(
    lambda scheme, host, path: f"{scheme}://{host}{path}",
    st.sampled_from(["https", "http"]),
    host_strategy,
    path_strategy,
)


class TestDiscoveryUrlNormalization:
    """Property tests for discovery URL normalization."""

    @given(issuer=issuer_strategy, slashes=st.integers(min_value=0, max_value=4))
    @settings(max_examples=100)
    def test_single_suffix(self, issuer: str, slashes: int) -> None:
        """
        Property 1: Discovery URL Normalization
        For any issuer with any number of trailing slashes, the result ends
        with the well-known suffix exactly once and has no double slash
        before it.
        """
        url = normalize_discovery_url(issuer + "/" * slashes)

        assert url.endswith(WELL_KNOWN_PATH)
        assert url.count(WELL_KNOWN_PATH) == 1
        assert not url.endswith("/" + WELL_KNOWN_PATH)
        assert url == issuer + WELL_KNOWN_PATH

    @given(issuer=issuer_strategy)
    @settings(max_examples=100)
    def test_idempotent(self, issuer: str) -> None:
        """
        Property 1: Discovery URL Normalization
        Normalizing an already normalized URL returns it unchanged.
        """
        once = normalize_discovery_url(issuer)

        assert normalize_discovery_url(once) == once
