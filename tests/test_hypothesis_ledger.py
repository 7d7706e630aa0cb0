"""
Hypothesis Property-Based Tests for the ledger.

Checks the exactly-once and non-negative balance invariants over random
operation sequences against the in-memory store.
"""

import asyncio

from hypothesis import given, settings
from hypothesis import strategies as st

from iap.models.domain import SubscriptionState
from iap.services.purchase_normalizer import derive_transaction_id, payload_hash
from iap.store import InMemoryIapStore, choose_subscription

# ============================================================================
# Hypothesis Strategies
# ============================================================================

profile_ids = st.sampled_from(["a", "b", "c"])
game_ids = st.sampled_from(["lumarush", "color_crunch"])
deltas = st.integers(min_value=-1_000, max_value=1_000)
transaction_ids = st.text(alphabet="abcXYZ0123", min_size=1, max_size=6)
json_scalars = st.one_of(st.none(), st.booleans(), st.integers(), st.text(max_size=10))
payloads = st.dictionaries(st.text(min_size=1, max_size=8), json_scalars, max_size=5)


@st.composite
def subscription_states(draw):
    """Generate subscription states."""
    active = draw(st.booleans())
    return SubscriptionState(
        provider=draw(st.sampled_from(["apple", "google", "paypal_web"])),
        status="active" if active else "expired",
        active=active,
        expires_at=draw(st.one_of(st.none(), st.integers(min_value=1, max_value=10**10))),
    )


def _run(coro):
    return asyncio.run(coro)


class TestLedgerProperties:
    """Store-level invariants."""

    @given(st.lists(st.tuples(profile_ids, game_ids, deltas), max_size=40))
    @settings(max_examples=50, deadline=None)
    def test_balances_never_negative(self, operations):
        """Any sequence of deltas leaves every balance >= 0."""

        async def scenario():
            store = InMemoryIapStore()
            for profile_id, game_id, delta in operations:
                assert await store.add_coins(profile_id, game_id, delta) >= 0
            for profile_id in ("a", "b", "c"):
                assert all(v >= 0 for v in (await store.get_coins(profile_id)).values())

        _run(scenario())

    @given(st.lists(transaction_ids, min_size=1, max_size=30))
    @settings(max_examples=50, deadline=None)
    def test_each_key_recorded_once(self, keys):
        """is_new is True exactly once per normalized key."""

        async def scenario():
            store = InMemoryIapStore()
            results = [await store.record_transaction("google", key, {"k": key}) for key in keys]
            new_keys = [key.lower() for key, result in zip(keys, results) if result.is_new]
            assert len(new_keys) == len(set(new_keys))
            assert set(new_keys) == {key.lower() for key in keys}

        _run(scenario())

    @given(
        st.dictionaries(st.tuples(profile_ids, game_ids), st.integers(0, 1_000), max_size=6),
        profile_ids,
        profile_ids,
    )
    @settings(max_examples=50, deadline=None)
    def test_merge_conserves_coins(self, balances, primary, secondary):
        """A merge moves coins without creating or destroying any."""

        async def scenario():
            store = InMemoryIapStore()
            for (profile_id, game_id), amount in balances.items():
                await store.add_coins(profile_id, game_id, amount)
            before = {p: await store.get_coins(p) for p in {primary, secondary}}
            total_before = sum(sum(c.values()) for c in before.values())

            await store.merge_profiles(primary, secondary)

            after = {p: await store.get_coins(p) for p in {primary, secondary}}
            assert sum(sum(c.values()) for c in after.values()) == total_before
            if primary != secondary:
                assert all(v == 0 for v in after[secondary].values())

        _run(scenario())


class TestPureProperties:
    """Invariants of pure helpers."""

    @given(subscription_states(), subscription_states())
    def test_choose_subscription_prefers_active(self, primary, secondary):
        """The chosen state is one of the inputs and active if either was."""
        chosen = choose_subscription(primary, secondary)
        assert chosen in (primary, secondary)
        assert chosen.active == (primary.active or secondary.active)

    @given(payloads)
    def test_payload_hash_is_deterministic(self, payload):
        """Reordering keys never changes the hash."""
        reordered = dict(reversed(list(payload.items())))
        assert payload_hash("apple", "p", payload) == payload_hash("apple", "p", reordered)

    @given(transaction_ids, payloads)
    def test_verified_id_always_wins(self, verified_id, payload):
        """A non-blank verified id is used verbatim (trimmed)."""
        assert derive_transaction_id(verified_id, "google", "p", payload) == verified_id.strip()
