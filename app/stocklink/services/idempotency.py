import hashlib
import json
from dataclasses import dataclass

from sqlalchemy.exc import IntegrityError

from app.stocklink.core.error_catalog import AppError, ErrorCatalog
from app.stocklink.db.models import IdempotencyRecord
from app.stocklink.repos.idempotency import (
    STATE_FAILED,
    STATE_IN_PROGRESS,
    STATE_SUCCEEDED,
    IdempotencyRepository,
)


IDEMPOTENCY_HEADER = "Idempotency-Key"


@dataclass
class IdempotencyReplay:
    status_code: int
    response_body: dict


class IdempotencyContext:
    def __init__(self, record: IdempotencyRecord, repo: IdempotencyRepository):
        self._record = record
        self._repo = repo

    def record_success(self, *, status_code: int, response_body: dict) -> None:
        self._repo.finish(self._record, state=STATE_SUCCEEDED, status_code=status_code, response_body=response_body)

    def record_failure(self, *, status_code: int, response_body: dict) -> None:
        self._repo.finish(self._record, state=STATE_FAILED, status_code=status_code, response_body=response_body)


class IdempotencyService:
    """Replays the stored response for a repeated ``Idempotency-Key``.

    Only transfer requests use it: every other transfer action is already
    guarded by the version check.
    """

    def __init__(self, db):
        self.repo = IdempotencyRepository(db)

    @staticmethod
    def fingerprint(payload: object) -> str:
        payload_bytes = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(payload_bytes).hexdigest()

    def start(
        self,
        *,
        scope: str,
        endpoint: str,
        method: str,
        idempotency_key: str,
        request_hash: str,
    ) -> tuple[IdempotencyContext | None, IdempotencyReplay | None]:
        lookup = {"scope": scope, "endpoint": endpoint, "method": method, "idempotency_key": idempotency_key}
        existing = self.repo.find(**lookup)
        if existing:
            return self._handle_existing(existing, request_hash)
        try:
            record = self.repo.claim(request_hash=request_hash, **lookup)
        except IntegrityError:
            self.repo.db.rollback()
            return self._handle_existing(self.repo.find(**lookup), request_hash)
        return IdempotencyContext(record, self.repo), None

    def _handle_existing(
        self, existing: IdempotencyRecord | None, request_hash: str
    ) -> tuple[IdempotencyContext | None, IdempotencyReplay | None]:
        if existing is None:
            raise AppError(ErrorCatalog.IDEMPOTENCY_REQUEST_IN_PROGRESS)
        if existing.request_hash != request_hash:
            raise AppError(ErrorCatalog.IDEMPOTENCY_KEY_REUSED_WITH_DIFFERENT_PAYLOAD)
        if existing.state == STATE_FAILED:
            # A failed attempt left nothing behind; let the caller try again.
            return IdempotencyContext(self.repo.rearm(existing), self.repo), None
        if existing.state == STATE_IN_PROGRESS or existing.response_body is None or existing.status_code is None:
            raise AppError(ErrorCatalog.IDEMPOTENCY_REQUEST_IN_PROGRESS)
        return None, IdempotencyReplay(status_code=existing.status_code, response_body=json.loads(existing.response_body))


def extract_idempotency_key(headers) -> str | None:
    key = headers.get(IDEMPOTENCY_HEADER)
    return key.strip() if key and key.strip() else None
