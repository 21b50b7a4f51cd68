"""Per-user writer lanes.

A lane is a transaction-scoped database lock: once taken it is held until
the caller's transaction commits or rolls back, so every gamification
write for one user (ledger appends, unlock fan-out, streak transitions)
runs in one transaction at a time. On PostgreSQL the lane is an advisory
lock, which the server includes in its deadlock detection. SQLite admits
a single writer per database, so there the lane is a no-op.

Lanes are re-entrant within a transaction; taking the same user's lane
again while holding it does not block.
"""

from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

# classid half of the two-key advisory lock; keeps engage lanes apart
# from advisory locks other applications take on the same database
LANE_LOCK_CLASS = 0x656E67


def lane_statement(user_id: str):
    return select(func.pg_advisory_xact_lock(LANE_LOCK_CLASS, func.hashtext(user_id)))


async def acquire_lane(db: AsyncSession, user_id: str) -> None:
    """Take the user's writer lane for the rest of the current transaction."""
    if db.get_bind().dialect.name != "postgresql":
        return
    await db.execute(lane_statement(user_id))
