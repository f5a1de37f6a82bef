"""Property-based tests for streamboard.

Uses hypothesis to check invariants of the number parsing, row validation
and log sanitization that every refresh relies on.
"""

from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from streamboard.normalize import MAX_COUNT, is_valid_name, normalize_count, normalize_key, normalize_signed_delta
from streamboard.safe_logging import redact_dict, sanitize_message
from streamboard.scrapers.base import RawTrackRecord
from streamboard.scrapers.kworb import UNKNOWN_ARTIST, aggregate_artists_from_tracks, parse_artist_rows

# Number parsing properties


@given(st.text(max_size=40))
@settings(max_examples=200)
def test_normalize_count_never_negative(text: str):
    """Property: Any input parses to a non-negative integer without raising."""
    result = normalize_count(text)
    assert isinstance(result, int)
    assert result >= 0


@given(st.integers(min_value=0, max_value=10**12))
@settings(max_examples=100)
def test_normalize_count_thousands_separators(n: int):
    """Property: Comma-grouped integers parse back to their value."""
    assert normalize_count(f"{n:,}") == n


@given(st.text(alphabet=st.sampled_from("0123456789"), min_size=1, max_size=500), st.sampled_from(["", "+", "-"]))
@settings(max_examples=200)
def test_digit_runs_of_any_length(digits: str, sign: str):
    """Property: Digit runs parse exactly, or to 0 when too large to store."""
    expected = int(digits)
    assert normalize_count(sign + digits) == (expected if expected <= MAX_COUNT else 0)

    delta = normalize_signed_delta(sign + digits)
    if expected == 0 or expected > MAX_COUNT:
        assert delta is None
    else:
        assert delta == (-expected if sign == "-" else expected)


@given(st.integers(min_value=1, max_value=999))
@settings(max_examples=50)
def test_unit_suffix_scaling(n: int):
    """Property: K and M suffixes scale by a thousand and a million."""
    assert normalize_count(f"{n}K") == n * 1_000
    assert normalize_count(f"{n}M") == n * 1_000_000


@given(st.integers(min_value=-(10**9), max_value=10**9).filter(lambda n: n != 0))
@settings(max_examples=100)
def test_signed_delta_keeps_sign(n: int):
    """Property: Explicitly signed deltas keep their sign and magnitude."""
    assert normalize_signed_delta(f"{n:+,}") == n


@given(st.text(max_size=40))
@settings(max_examples=200)
def test_signed_delta_never_zero(text: str):
    """Property: A delta is either unknown (None) or non-zero."""
    assert normalize_signed_delta(text) != 0


# Identity and validity properties


@given(st.text(alphabet=st.sampled_from("aAbBzZßÉé \t"), max_size=40))
@settings(max_examples=100)
def test_normalize_key_idempotent(text: str):
    """Property: Normalizing a key twice equals normalizing once."""
    once = normalize_key(text)
    assert normalize_key(once) == once


@given(st.text(alphabet=st.sampled_from("0123456789 -=+.,"), max_size=30))
@settings(max_examples=100)
def test_names_without_letters_are_invalid(text: str):
    """Property: Names made only of digits and symbols are never valid."""
    assert not is_valid_name(text)


@given(
    st.lists(
        st.lists(st.text(max_size=20), max_size=6),
        max_size=25,
    )
)
@settings(max_examples=100)
def test_parsed_artist_rows_are_plausible(rows: list[list[str]]):
    """Property: Accepted rows have a positive unique rank, a valid name and pass the floor."""
    result = parse_artist_rows(rows, min_listeners=1_000)

    ranks = [r.rank for r in result.records]
    assert len(ranks) == len(set(ranks))
    for record in result.records:
        assert record.rank > 0
        assert is_valid_name(record.name)
        assert record.monthly_listeners >= 1_000
    assert result.accepted + result.rejected <= len(rows)


@given(
    st.lists(
        st.tuples(
            st.sampled_from(["Joost", "Sabrina Carpenter", "Froukje", UNKNOWN_ARTIST]),
            st.integers(min_value=1, max_value=5_000_000),
        ),
        max_size=30,
    )
)
@settings(max_examples=100)
def test_aggregation_preserves_stream_totals(entries: list[tuple[str, int]]):
    """Property: Aggregated listeners sum to the known-artist streams, ranked densely."""
    tracks = [
        RawTrackRecord(rank=i, title=f"Track {i}", artist_name=artist, daily_streams=streams)
        for i, (artist, streams) in enumerate(entries, start=1)
    ]

    artists = aggregate_artists_from_tracks(tracks)

    expected = sum(t.daily_streams for t in tracks if t.artist_name != UNKNOWN_ARTIST)
    assert sum(a.monthly_listeners for a in artists) == expected
    assert [a.rank for a in artists] == list(range(1, len(artists) + 1))
    listeners = [a.monthly_listeners for a in artists]
    assert listeners == sorted(listeners, reverse=True)


# Safe logging properties


@given(st.text(alphabet=st.sampled_from("0123456789abcdef"), min_size=16, max_size=64))
@settings(max_examples=100)
def test_sanitize_message_hides_bearer_tokens(token: str):
    """Property: Bearer token values never survive sanitization."""
    sanitized = sanitize_message(f"GET /v1/search failed, Authorization: Bearer {token}")
    assert token not in sanitized


@given(
    st.dictionaries(
        st.sampled_from(["client_secret", "admin_secret", "access_token"]),
        st.text(alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789"), min_size=5),
    )
)
@settings(max_examples=50)
def test_redact_dict_hides_secret_values(data: dict[str, str]):
    """Property: Long secret values are never returned verbatim."""
    redacted = redact_dict(data)
    for key, value in data.items():
        assert redacted[key] != value
