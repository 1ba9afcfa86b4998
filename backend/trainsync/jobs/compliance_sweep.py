"""Compliance sync sweep.

Drains the completion queue for unlocked tenants, processes pending snapshot
regenerations, then purges old completed/failed queue rows. Safe to run from
cron every few minutes; concurrent runs are serialised per tenant by the sync
lock.
"""

from __future__ import annotations

import logging

from trainsync.database import WriteSessionLocal
from trainsync.apps.compliance.orchestrator import build_orchestrator

logger = logging.getLogger(__name__)


def run() -> dict:
    db = WriteSessionLocal()
    orchestrator = build_orchestrator(db)
    try:
        summary = orchestrator.run_sweep()
        db.commit()
        return summary.model_dump()
    except Exception:
        db.rollback()
        logger.exception("Compliance sync sweep failed")
        raise
    finally:
        orchestrator.close()
        db.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    result = run()
    print("Compliance sync sweep completed:", result)
