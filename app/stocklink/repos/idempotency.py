import json
from datetime import datetime

from sqlalchemy import select

from app.stocklink.db.models import IdempotencyRecord

STATE_IN_PROGRESS = "in_progress"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"


class IdempotencyRepository:
    def __init__(self, db):
        self.db = db

    def find(self, *, scope: str, endpoint: str, method: str, idempotency_key: str) -> IdempotencyRecord | None:
        return (
            self.db.execute(
                select(IdempotencyRecord).where(
                    IdempotencyRecord.scope == scope,
                    IdempotencyRecord.endpoint == endpoint,
                    IdempotencyRecord.method == method,
                    IdempotencyRecord.idempotency_key == idempotency_key,
                )
            )
            .scalars()
            .first()
        )

    def claim(self, *, request_hash: str, **lookup) -> IdempotencyRecord:
        """Insert an in-progress record; raises IntegrityError when another caller got there first."""
        record = IdempotencyRecord(**lookup, request_hash=request_hash, state=STATE_IN_PROGRESS)
        self.db.add(record)
        self.db.commit()
        return record

    def rearm(self, record: IdempotencyRecord) -> IdempotencyRecord:
        record.state = STATE_IN_PROGRESS
        record.status_code = None
        record.response_body = None
        record.updated_at = datetime.utcnow()
        self.db.add(record)
        self.db.commit()
        return record

    def finish(self, record: IdempotencyRecord, *, state: str, status_code: int, response_body: dict) -> None:
        record.state = state
        record.status_code = status_code
        record.response_body = json.dumps(response_body, default=str)
        record.updated_at = datetime.utcnow()
        self.db.add(record)
        self.db.commit()
