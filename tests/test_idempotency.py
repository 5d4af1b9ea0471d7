"""
Tests for the idempotency-key store.
"""
import uuid
from datetime import timedelta

from idempotency import PROCEED, REPLAY, IdempotencyStore
from models import IdempotencyKey, utc_now

RESPONSE = {"id": "pay_abc", "status": "pending", "amount": 50000}


class TestIdempotencyStore:

    def test_unknown_key_proceeds(self, db, merchant) -> None:
        result = IdempotencyStore(db).check("key-1", merchant.id)

        assert result.decision == PROCEED
        assert result.response is None
        assert not result.is_replay

    def test_live_key_replays_response(self, db, merchant) -> None:
        store = IdempotencyStore(db)
        store.commit("key-1", merchant.id, RESPONSE)

        result = store.check("key-1", merchant.id)

        assert result.decision == REPLAY
        assert result.response == RESPONSE

    def test_key_expires_after_24_hours(self, db, merchant) -> None:
        store = IdempotencyStore(db)
        entry = store.commit("key-1", merchant.id, RESPONSE)

        assert entry.expires_at - entry.created_at == timedelta(hours=24)

    def test_expired_key_is_purged(self, db, merchant) -> None:
        now = utc_now()
        IdempotencyStore(db, clock=lambda: now - timedelta(hours=25)).commit("key-1", merchant.id, RESPONSE)

        result = IdempotencyStore(db, clock=lambda: now).check("key-1", merchant.id)

        assert result.decision == PROCEED
        assert db.query(IdempotencyKey).count() == 0

    def test_keys_are_scoped_per_merchant(self, db, merchant) -> None:
        store = IdempotencyStore(db)
        store.commit("key-1", merchant.id, RESPONSE)

        assert store.check("key-1", uuid.uuid4()).decision == PROCEED

    def test_record_does_not_commit(self, db, merchant) -> None:
        store = IdempotencyStore(db)
        store.record("key-1", merchant.id, RESPONSE)
        db.rollback()

        assert store.check("key-1", merchant.id).decision == PROCEED

    def test_response_keeps_key_order(self, db, merchant) -> None:
        store = IdempotencyStore(db)
        store.commit("key-1", merchant.id, {"status": "pending", "id": "pay_abc", "amount": 50000})

        assert db.query(IdempotencyKey).one().response == '{"status": "pending", "id": "pay_abc", "amount": 50000}'
        assert list(store.check("key-1", merchant.id).response) == ["status", "id", "amount"]
