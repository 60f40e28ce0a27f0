"""
PostgreSQL-only schema hardening, run at startup after create_all.

create_all builds tables, constraints and the partial unique index on every
dialect. What it cannot express lives here: cross-table checks and
timestamp rules that must hold even for bulk UPDATEs issued outside the ORM.
Every migration is idempotent (safe to run on every boot).
"""
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

from app.core.logging import get_logger

logger = get_logger(__name__)


async def run_migration_001(conn: AsyncConnection) -> None:
    """001 - reservation amount may not exceed the puppy's price."""
    await conn.execute(text("""
        CREATE OR REPLACE FUNCTION enforce_reservation_amount_within_price()
        RETURNS TRIGGER AS $$
        DECLARE
            puppy_price NUMERIC(10, 2);
        BEGIN
            SELECT price_usd INTO puppy_price FROM puppies WHERE id = NEW.puppy_id;
            IF puppy_price IS NOT NULL AND NEW.amount > puppy_price THEN
                RAISE EXCEPTION 'DEPOSIT_EXCEEDS_PRICE: % > %', NEW.amount, puppy_price
                    USING ERRCODE = 'check_violation',
                          CONSTRAINT = 'valid_reservation_amount';
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """))
    await conn.execute(text(
        "DROP TRIGGER IF EXISTS trg_reservation_amount_within_price ON reservations"
    ))
    await conn.execute(text("""
        CREATE TRIGGER trg_reservation_amount_within_price
        BEFORE INSERT OR UPDATE OF amount, puppy_id ON reservations
        FOR EACH ROW EXECUTE FUNCTION enforce_reservation_amount_within_price();
    """))


async def run_migration_002(conn: AsyncConnection) -> None:
    """002 - sold_at is stamped once, on the first transition to 'sold'."""
    await conn.execute(text("""
        CREATE OR REPLACE FUNCTION stamp_puppy_sold_at()
        RETURNS TRIGGER AS $$
        BEGIN
            IF NEW.status = 'sold' AND NEW.sold_at IS NULL THEN
                NEW.sold_at := COALESCE(OLD.sold_at, timezone('utc', now()));
            ELSIF OLD.sold_at IS NOT NULL THEN
                NEW.sold_at := OLD.sold_at;
            END IF;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
    """))
    await conn.execute(text("DROP TRIGGER IF EXISTS trg_puppy_sold_at ON puppies"))
    await conn.execute(text("""
        CREATE TRIGGER trg_puppy_sold_at
        BEFORE UPDATE OF status, sold_at ON puppies
        FOR EACH ROW EXECUTE FUNCTION stamp_puppy_sold_at();
    """))


async def run_migration_003(conn: AsyncConnection) -> None:
    """003 - partial index that keeps the sweeper's scan small."""
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_reservations_pending_expires_at
        ON reservations(expires_at) WHERE status = 'pending';
    """))
    await conn.execute(text("""
        CREATE INDEX IF NOT EXISTS idx_webhook_events_unprocessed
        ON webhook_events(created_at) WHERE processed = FALSE;
    """))


async def run_all_migrations(conn: AsyncConnection) -> None:
    """Run every migration in order."""
    for name, migration in (
        ("001", run_migration_001),
        ("002", run_migration_002),
        ("003", run_migration_003),
    ):
        logger.info(f"Running migration {name}...")
        await migration(conn)
