"""
Custody Resync Monitor
Sweeps provider work that no monitor finished (monitor timed out, process
restarted mid-poll) and replays terminal handling: never-minted records whose
mint task id is known, and records with an EXECUTING mint or burn operation
"""

import logging
from typing import Any, Dict

from sqlalchemy import and_, or_, select

from database import async_managed_session
from models import CustodyRecord, CustodyStatus, Operation, OperationStatus, OperationType
from services.engine import CustodyEngine
from services.reconciliation_monitor import MonitorOutcome
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

SWEEP_BATCH_SIZE = 100


async def run_resync_sweep(engine: CustodyEngine) -> Dict[str, Any]:
    """Scheduled job: resync unminted records with a token id and unfinished mint/burn operations"""
    try:
        executing = select(Operation.custody_record_id).where(
            Operation.status == OperationStatus.EXECUTING.value,
            Operation.operation_type.in_((OperationType.MINT.value, OperationType.BURN.value)),
        )
        async with async_managed_session() as session:
            record_ids = list(
                (
                    await session.execute(
                        select(CustodyRecord.id)
                        .where(
                            or_(
                                and_(
                                    CustodyRecord.token_id.isnot(None),
                                    CustodyRecord.minted_at.is_(None),
                                    CustodyRecord.status.in_(
                                        (CustodyStatus.LINKED.value, CustodyStatus.FAILED.value)
                                    ),
                                ),
                                CustodyRecord.id.in_(executing),
                            )
                        )
                        .order_by(CustodyRecord.updated_at.asc())
                        .limit(SWEEP_BATCH_SIZE)
                    )
                ).scalars().all()
            )

        counts: Dict[str, int] = {outcome.value: 0 for outcome in MonitorOutcome}
        for record_id in record_ids:
            try:
                result = await engine.monitor.resync_custody_record(record_id)
                counts[result.outcome.value] += 1
            except Exception as e:
                counts[MonitorOutcome.ERROR.value] += 1
                logger.error(f"❌ CUSTODY_RESYNC_FAILED: record {record_id}: {e}")

        resolved = counts[MonitorOutcome.SUCCEEDED.value] + counts[MonitorOutcome.RECOVERED.value]
        if record_ids:
            logger.info(f"🔁 CUSTODY_RESYNC_SWEEP: checked {len(record_ids)}, resolved {resolved}, outcomes {counts}")
        return {
            "status": "completed",
            "checked": len(record_ids),
            "resolved": resolved,
            "outcomes": counts,
            "timestamp": get_naive_utc_now().isoformat(),
        }

    except Exception as e:
        logger.error(f"❌ CUSTODY_RESYNC_SWEEP_FAILED: {e}")
        return {"status": "error", "error": str(e), "timestamp": get_naive_utc_now().isoformat()}
