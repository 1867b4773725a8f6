from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime

from sqlalchemy.orm import sessionmaker

from app.stocklink.core.config import settings
from app.stocklink.core.logging import configure_logging
from app.stocklink.db.session import build_engine
from app.stocklink.services.transfer_workflow import TransferWorkflow


def _parse_now(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is not None:
        parsed = parsed.replace(tzinfo=None) - parsed.utcoffset()
    return parsed


def run_sweep(
    now: datetime | None,
    output_format: str,
    *,
    batch_size: int | None = None,
    database_url: str | None = None,
) -> int:
    if not settings.OPS_ENABLE_EXPIRY_SWEEP:
        print("Expiry sweep disabled by OPS_ENABLE_EXPIRY_SWEEP.", file=sys.stderr)
        return 2
    engine = build_engine(database_url or settings.DATABASE_URL)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    try:
        with SessionLocal() as db:
            cutoff = now or datetime.utcnow()
            expired = TransferWorkflow(db).sweep_expired(cutoff, batch_size=batch_size)
    finally:
        engine.dispose()
    if output_format == "json":
        print(json.dumps({"now": cutoff.isoformat(), "expired": expired}, indent=2))
    else:
        print(f"Expired {expired} transfer(s) as of {cutoff.isoformat()}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Expire pending/approved transfers past their deadline")
    parser.add_argument("--now", help="ISO-8601 cutoff; defaults to the current UTC time")
    parser.add_argument("--batch-size", type=int, default=None)
    parser.add_argument("--format", choices=["json", "text"], default="text")
    args = parser.parse_args(argv)
    try:
        now = _parse_now(args.now)
    except ValueError:
        parser.error(f"--now is not an ISO-8601 timestamp: {args.now}")
    configure_logging()
    return run_sweep(now, args.format, batch_size=args.batch_size)


if __name__ == "__main__":
    raise SystemExit(main())
