"""Unit tests for ConsentLifecycle.

This test suite covers:
    - Creation (defaults, ttl, channel, store failures)
    - Reads (opening, idempotent opens, expiry enforcement)
    - Acceptance (first writer wins, idempotent repeats, stale caches)
    - Store failure handling and recovery
    - Reconciling unconfirmed cache entries with the store
"""

import asyncio
from datetime import timedelta

import pytest

from conftest import NOTIFY_TARGET, PUBLIC_BASE_URL, FlakyStore, SlowStore
from consent_lifecycle.core.lifecycle import EXPIRED_MESSAGE, NOT_FOUND_MESSAGE
from consent_lifecycle.exceptions import ExpiredError, NotFoundError, PersistenceError
from consent_lifecycle.models import MAX_TTL_MINUTES, PENDING_STATES, ConsentState


# ============================================================================
# create()
# ============================================================================


class TestCreate:
    """Tests for ConsentLifecycle.create()."""

    @pytest.mark.asyncio
    async def test_create_defaults(self, engine, store, cache, consent_input, clock):
        outcome = await engine.create(consent_input())
        record = outcome.record

        assert record.state is ConsentState.CREATED
        assert record.subject_id == "client-42"
        assert record.channel == "WHATSAPP"
        assert record.created_at == clock.now()
        assert record.expires_at == clock.now() + timedelta(minutes=60)
        assert record.notify_target == NOTIFY_TARGET
        assert record.request_id.startswith("CR-")
        assert outcome.url == f"{PUBLIC_BASE_URL}/consent/{record.token}"

        assert await store.get_by_token(record.token) == record
        assert cache.get(record.token) == record

    @pytest.mark.asyncio
    async def test_create_with_ttl_channel_and_metadata(self, engine, consent_input, clock):
        outcome = await engine.create(
            consent_input(ttl=1.5, channel="SMS", metadata={"policy": "v3"})
        )
        record = outcome.record

        assert record.expires_at == clock.now() + timedelta(minutes=1.5)
        assert record.channel == "SMS"
        assert record.metadata == {"policy": "v3"}

    @pytest.mark.asyncio
    async def test_create_with_maximum_ttl(self, engine, consent_input, clock):
        outcome = await engine.create(consent_input(ttl=MAX_TTL_MINUTES))
        assert outcome.record.expires_at == clock.now() + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_create_issues_distinct_tokens(self, engine, consent_input):
        first = await engine.create(consent_input())
        second = await engine.create(consent_input())
        assert first.record.token != second.record.token
        assert first.record.request_id != second.record.request_id

    @pytest.mark.asyncio
    async def test_create_store_failure_caches_nothing(self, build_engine, cache, consent_input):
        store = FlakyStore()
        store.fail_insert = True
        engine = build_engine(store)

        with pytest.raises(PersistenceError):
            await engine.create(consent_input())

        assert len(cache) == 0
        assert len(store) == 0


# ============================================================================
# read()
# ============================================================================


class TestRead:
    """Tests for ConsentLifecycle.read()."""

    @pytest.mark.asyncio
    async def test_first_read_opens(self, engine, store, consent_input, clock):
        created = await engine.create(consent_input())
        clock.advance(minutes=2)

        record = await engine.read(created.record.token)

        assert record.state is ConsentState.OPENED
        assert record.opened_at == clock.now()
        assert (await store.get_by_token(created.record.token)).state is ConsentState.OPENED

    @pytest.mark.asyncio
    async def test_repeat_reads_keep_first_open(self, engine, consent_input, clock):
        created = await engine.create(consent_input())
        first = await engine.read(created.record.token)
        clock.advance(minutes=10)

        second = await engine.read(created.record.token)

        assert second.state is ConsentState.OPENED
        assert second.opened_at == first.opened_at

    @pytest.mark.asyncio
    async def test_read_unknown_token(self, engine):
        with pytest.raises(NotFoundError) as exc_info:
            await engine.read("0" * 32)
        assert exc_info.value.message == NOT_FOUND_MESSAGE
        assert exc_info.value.token_hint == "000000"

    @pytest.mark.asyncio
    async def test_read_at_expiry_instant_still_valid(self, engine, consent_input, clock):
        created = await engine.create(consent_input())
        clock.set(created.record.expires_at)

        record = await engine.read(created.record.token)

        assert record.state is ConsentState.OPENED

    @pytest.mark.asyncio
    async def test_read_after_expiry(self, engine, store, consent_input, clock, webhook_recorder):
        created = await engine.create(consent_input())
        clock.advance(minutes=61)

        with pytest.raises(ExpiredError) as exc_info:
            await engine.read(created.record.token)
        with pytest.raises(ExpiredError):
            await engine.read(created.record.token)
        await engine.dispatcher.drain()

        assert exc_info.value.message == EXPIRED_MESSAGE
        assert exc_info.value.request_id == created.record.request_id
        assert (await store.get_by_token(created.record.token)).state is ConsentState.EXPIRED
        assert len(webhook_recorder.events("expired")) == 1

    @pytest.mark.asyncio
    async def test_read_loads_from_store_when_not_cached(self, engine, cache, consent_input):
        created = await engine.create(consent_input())
        cache.clear()

        record = await engine.read(created.record.token)

        assert record.state is ConsentState.OPENED
        assert cache.get(created.record.token).state is ConsentState.OPENED

    @pytest.mark.asyncio
    async def test_read_store_unreachable_and_uncached(self, build_engine, cache, consent_input):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        cache.clear()
        store.fail_get = True

        with pytest.raises(PersistenceError):
            await engine.read(created.record.token)

    @pytest.mark.asyncio
    async def test_open_failure_is_best_effort(self, build_engine, cache, consent_input):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        token = created.record.token
        store.fail_update = True

        record = await engine.read(token)

        assert record.state is ConsentState.OPENED
        assert not cache.is_persisted(token)
        assert (await store.get_by_token(token)).state is ConsentState.CREATED

        # Once the store recovers the next read persists the open
        store.fail_update = False
        record = await engine.read(token)

        assert record.state is ConsentState.OPENED
        assert cache.is_persisted(token)
        assert (await store.get_by_token(token)).state is ConsentState.OPENED

    @pytest.mark.asyncio
    async def test_read_does_not_show_unconfirmed_acceptance(self, build_engine, consent_input):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        store.fail_update = True
        with pytest.raises(PersistenceError):
            await engine.accept(created.record.token)

        store.fail_get = True
        with pytest.raises(PersistenceError):
            await engine.read(created.record.token)

    @pytest.mark.asyncio
    async def test_read_after_failed_accept_shows_store_state(
        self, build_engine, consent_input
    ):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        store.fail_update = True
        with pytest.raises(PersistenceError):
            await engine.accept(created.record.token)
        store.fail_update = False

        record = await engine.read(created.record.token)

        assert record.state is ConsentState.OPENED
        assert record.accepted_at is None


# ============================================================================
# accept()
# ============================================================================


class TestAccept:
    """Tests for ConsentLifecycle.accept()."""

    @pytest.mark.asyncio
    async def test_accept(self, engine, store, consent_input, clock, webhook_recorder):
        created = await engine.create(consent_input(metadata={"policy": "v3"}))
        await engine.read(created.record.token)
        clock.advance(minutes=3)

        outcome = await engine.accept(
            created.record.token, client_address="203.0.113.7", user_agent="Mozilla/5.0"
        )
        await engine.dispatcher.drain()

        assert outcome.already_accepted is False
        record = outcome.record
        assert record.state is ConsentState.ACCEPTED
        assert record.accepted_at == clock.now()
        assert record.accepted_by == "203.0.113.7"
        assert record.accepted_agent == "Mozilla/5.0"
        assert record.opened_at is not None
        assert await store.get_by_token(created.record.token) == record

        [payload] = webhook_recorder.events("accepted")
        assert payload["requestId"] == record.request_id
        assert payload["state"] == "ACCEPTED"
        assert payload["metadata"] == {"policy": "v3"}

    @pytest.mark.asyncio
    async def test_accept_without_open(self, engine, consent_input):
        created = await engine.create(consent_input())
        outcome = await engine.accept(created.record.token)
        assert outcome.record.state is ConsentState.ACCEPTED
        assert outcome.record.opened_at is None

    @pytest.mark.asyncio
    async def test_accept_is_idempotent(self, engine, consent_input, clock, webhook_recorder):
        created = await engine.create(consent_input())
        first = await engine.accept(created.record.token, client_address="203.0.113.7")
        clock.advance(minutes=5)

        second = await engine.accept(created.record.token, client_address="198.51.100.9")
        await engine.dispatcher.drain()

        assert second.already_accepted is True
        assert second.record.accepted_at == first.record.accepted_at
        assert second.record.accepted_by == "203.0.113.7"
        assert len(webhook_recorder.events("accepted")) == 1

    @pytest.mark.asyncio
    async def test_accepted_request_never_expires(
        self, engine, consent_input, clock, webhook_recorder
    ):
        created = await engine.create(consent_input())
        await engine.accept(created.record.token)
        clock.advance(days=2)

        read = await engine.read(created.record.token)
        again = await engine.accept(created.record.token)
        await engine.dispatcher.drain()

        assert read.state is ConsentState.ACCEPTED
        assert again.already_accepted is True
        assert webhook_recorder.events("expired") == []

    @pytest.mark.asyncio
    async def test_accept_after_expiry(self, engine, store, consent_input, clock, webhook_recorder):
        created = await engine.create(consent_input())
        clock.advance(minutes=61)

        with pytest.raises(ExpiredError):
            await engine.accept(created.record.token)
        with pytest.raises(ExpiredError):
            await engine.accept(created.record.token)
        await engine.dispatcher.drain()

        stored = await store.get_by_token(created.record.token)
        assert stored.state is ConsentState.EXPIRED
        assert stored.accepted_at is None
        assert len(webhook_recorder.events("expired")) == 1
        assert webhook_recorder.events("accepted") == []

    @pytest.mark.asyncio
    async def test_accept_unknown_token(self, engine):
        with pytest.raises(NotFoundError):
            await engine.accept("f" * 32)

    @pytest.mark.asyncio
    async def test_accept_with_stale_cache_reports_store_winner(
        self, engine, store, consent_input, clock, webhook_recorder
    ):
        created = await engine.create(consent_input())
        token = created.record.token
        # Another process accepts through the shared store
        await store.conditional_update(
            token,
            PENDING_STATES,
            {"state": ConsentState.ACCEPTED, "accepted_at": clock.now(), "accepted_by": "10.0.0.1"},
            ("accepted_at",),
        )
        clock.advance(minutes=1)

        outcome = await engine.accept(token, client_address="203.0.113.7")
        await engine.dispatcher.drain()

        assert outcome.already_accepted is True
        assert outcome.record.accepted_by == "10.0.0.1"
        assert engine.cache.get(token).state is ConsentState.ACCEPTED
        assert webhook_recorder.requests == []

    @pytest.mark.asyncio
    async def test_accept_with_stale_cache_after_remote_expiry(
        self, engine, store, consent_input, webhook_recorder
    ):
        created = await engine.create(consent_input())
        await store.conditional_update(
            created.record.token, PENDING_STATES, {"state": ConsentState.EXPIRED}
        )

        with pytest.raises(ExpiredError):
            await engine.accept(created.record.token)
        await engine.dispatcher.drain()

        assert webhook_recorder.requests == []

    @pytest.mark.asyncio
    async def test_concurrent_accepts_single_write(
        self, build_engine, consent_input, webhook_recorder
    ):
        store = SlowStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())

        outcomes = await asyncio.gather(
            *(engine.accept(created.record.token, client_address=f"10.0.0.{n}") for n in range(10))
        )
        await engine.dispatcher.drain()

        winners = [o for o in outcomes if not o.already_accepted]
        assert len(winners) == 1
        assert store.update_calls == 10
        assert store.applied_updates == 1
        assert {o.record.accepted_at for o in outcomes} == {winners[0].record.accepted_at}
        assert {o.record.accepted_by for o in outcomes} == {winners[0].record.accepted_by}
        assert len(webhook_recorder.events("accepted")) == 1


# ============================================================================
# Acceptance store failures
# ============================================================================


class TestAcceptStoreFailures:
    """Tests for accept() when the store rejects or loses writes."""

    @pytest.mark.asyncio
    async def test_accept_store_failure(self, build_engine, cache, consent_input, webhook_recorder):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        token = created.record.token
        store.fail_update = True

        with pytest.raises(PersistenceError):
            await engine.accept(token)
        await engine.dispatcher.drain()

        assert webhook_recorder.requests == []
        assert cache.get(token).state is ConsentState.ACCEPTED
        assert not cache.is_persisted(token)
        assert (await store.get_by_token(token)).state is ConsentState.CREATED

    @pytest.mark.asyncio
    async def test_unconfirmed_accept_is_not_reported_as_success(
        self, build_engine, consent_input
    ):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        store.fail_update = True
        with pytest.raises(PersistenceError):
            await engine.accept(created.record.token)

        store.fail_get = True
        with pytest.raises(PersistenceError):
            await engine.accept(created.record.token)

    @pytest.mark.asyncio
    async def test_accept_retry_after_store_recovers(
        self, build_engine, cache, consent_input, webhook_recorder
    ):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        token = created.record.token
        store.fail_update = True
        with pytest.raises(PersistenceError):
            await engine.accept(token)

        store.fail_update = False
        outcome = await engine.accept(token)
        await engine.dispatcher.drain()

        assert outcome.already_accepted is False
        assert cache.is_persisted(token)
        assert (await store.get_by_token(token)).state is ConsentState.ACCEPTED
        assert len(webhook_recorder.events("accepted")) == 1


# ============================================================================
# expire_if_due() and reconcile()
# ============================================================================


class TestExpireIfDue:
    """Tests for ConsentLifecycle.expire_if_due()."""

    @pytest.mark.asyncio
    async def test_expire_if_due(self, engine, consent_input, clock, webhook_recorder):
        created = await engine.create(consent_input())

        assert await engine.expire_if_due(created.record) is False

        clock.advance(minutes=61)
        assert await engine.expire_if_due(created.record) is True
        # The stale pending copy no longer wins
        assert await engine.expire_if_due(created.record) is False
        await engine.dispatcher.drain()

        assert len(webhook_recorder.events("expired")) == 1
        assert engine.cache.get(created.record.token).state is ConsentState.EXPIRED

    @pytest.mark.asyncio
    async def test_failed_expiry_leaves_unconfirmed_cache_entry(
        self, build_engine, cache, consent_input, clock
    ):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        clock.advance(minutes=61)
        store.fail_update = True

        with pytest.raises(PersistenceError):
            await engine.expire_if_due(created.record)

        assert cache.get(created.record.token).state is ConsentState.EXPIRED
        assert not cache.is_persisted(created.record.token)
        assert (await store.get_by_token(created.record.token)).state is ConsentState.CREATED


class TestReconcile:
    """Tests for ConsentLifecycle.reconcile()."""

    @pytest.mark.asyncio
    async def test_reconcile_replaces_unconfirmed_entry(
        self, build_engine, cache, consent_input, clock
    ):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        token = created.record.token
        clock.advance(minutes=61)
        store.fail_update = True
        with pytest.raises(PersistenceError):
            await engine.expire_if_due(created.record)
        store.fail_update = False

        record = await engine.reconcile(token)

        assert record.state is ConsentState.CREATED
        assert cache.get(token) == record
        assert cache.is_persisted(token)

    @pytest.mark.asyncio
    async def test_reconcile_unknown_token(self, engine):
        with pytest.raises(NotFoundError):
            await engine.reconcile("a" * 32)

    @pytest.mark.asyncio
    async def test_reconcile_store_unreachable(self, build_engine, cache, consent_input):
        store = FlakyStore()
        engine = build_engine(store)
        created = await engine.create(consent_input())
        store.fail_get = True

        with pytest.raises(PersistenceError):
            await engine.reconcile(created.record.token)

        assert cache.get(created.record.token) == created.record
