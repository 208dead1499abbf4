"""Idempotent transaction writer."""

from app.config import get_settings
from app.database import Database
from app.logging_config import get_logger
from app.schemas.connection import NormalizedTransaction


logger = get_logger("writer")


def write_transactions(
    db: Database,
    transactions: list[NormalizedTransaction],
    batch_size: int | None = None,
) -> int:
    """
    Upsert normalized transactions keyed by their deterministic id.

    Rows whose id already exists are skipped, so replaying a page (job retry,
    re-split window, webhook racing a scheduled sync) never duplicates and
    never errors.

    Args:
        db: Database instance.
        transactions: Normalized transactions from a provider adapter.
        batch_size: Rows per upsert call. Defaults to settings.writer_batch_size.

    Returns:
        Number of rows newly written.
    """
    if not transactions:
        return 0
    batch_size = batch_size or get_settings().writer_batch_size

    # Deduplicate within the call; PostgREST rejects a batch that
    # touches the same conflict key twice.
    rows = list({tx.id: tx.to_row() for tx in transactions}.values())

    written = 0
    for i in range(0, len(rows), batch_size):
        batch = rows[i:i + batch_size]
        inserted = db.upsert_transactions(batch)
        written += len(inserted)

    logger.debug(f"[WRITER] {written} new of {len(rows)} transaction(s)")
    return written
