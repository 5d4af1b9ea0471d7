"""
Idempotency-key store.

``check`` decides whether a request is a replay of one already answered;
``record``/``commit`` store the final response under (key, merchant_id)
for IDEMPOTENCY_TTL_HOURS.
"""
import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Dict, Optional

import structlog
from sqlalchemy.orm import Session

import config
from models import IdempotencyKey, as_utc, utc_now

logger = structlog.get_logger(__name__)

REPLAY = "replay"
PROCEED = "proceed"


@dataclass(frozen=True)
class IdempotencyResult:
    decision: str
    response: Optional[Dict] = None

    @property
    def is_replay(self) -> bool:
        return self.decision == REPLAY


class IdempotencyStore:
    def __init__(self, db: Session, ttl: Optional[timedelta] = None, clock: Callable = utc_now):
        self.db = db
        self.ttl = ttl if ttl is not None else timedelta(hours=config.IDEMPOTENCY_TTL_HOURS)
        self.clock = clock

    def _get(self, key: str, merchant_id) -> Optional[IdempotencyKey]:
        return (
            self.db.query(IdempotencyKey)
            .filter(IdempotencyKey.key == key, IdempotencyKey.merchant_id == merchant_id)
            .first()
        )

    def check(self, key: str, merchant_id) -> IdempotencyResult:
        entry = self._get(key, merchant_id)
        if entry is None:
            return IdempotencyResult(PROCEED)

        if as_utc(entry.expires_at) > self.clock():
            logger.info("idempotency_replay", idempotency_key=key, merchant_id=str(merchant_id))
            return IdempotencyResult(REPLAY, json.loads(entry.response))

        self.db.delete(entry)
        self.db.commit()
        logger.info("idempotency_key_expired", idempotency_key=key, merchant_id=str(merchant_id))
        return IdempotencyResult(PROCEED)

    def record(self, key: str, merchant_id, response: Dict) -> IdempotencyKey:
        """Stage the entry in the current transaction without committing it."""
        now = self.clock()
        entry = IdempotencyKey(
            key=key,
            merchant_id=merchant_id,
            response=json.dumps(response),
            created_at=now,
            expires_at=now + self.ttl,
        )
        self.db.add(entry)
        return entry

    def commit(self, key: str, merchant_id, response: Dict) -> IdempotencyKey:
        entry = self.record(key, merchant_id, response)
        self.db.commit()
        return entry
