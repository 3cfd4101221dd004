"""
Activation sweep for scheduled fee schedules.

Run from cron either through ``POST /api/v1/admin/fee-schedules/activate-due``
or the ``permitflow-activate-fee-schedules`` console script.
"""

import asyncio
from datetime import datetime
from typing import Any, Dict, Optional

from ..core.config import settings
from ..core.database import connect_to_mongo, close_mongo_connection
from ..core.errors import PermitEngineError
from ..core.logging_config import get_permit_logger, setup_logging
from ..models.fee_schedule import FeeSchedule
from .fee_schedule_service import fee_schedule_service

logger = get_permit_logger(__name__)

SWEEP_USER = "system:fee-schedule-activator"


class FeeScheduleActivator:
    """Activates every scheduled fee schedule whose effective date has passed"""

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        due = await FeeSchedule.get_scheduled_to_activate(now)

        processed = 0
        errors = []
        for schedule in due:
            try:
                await schedule.activate(SWEEP_USER, reason=f"Superseded by scheduled version {schedule.version}")
                await fee_schedule_service.link_permit_type(schedule)
                processed += 1
                logger.info("Scheduled fee schedule activated", permit_type_id=schedule.permit_type_id,
                            schedule_version=schedule.version)
            except PermitEngineError as e:
                logger.error(f"Failed to activate fee schedule {schedule.id}: {e.message}",
                             permit_type_id=schedule.permit_type_id)
                errors.append({"schedule_id": str(schedule.id), "error": e.message})
            except Exception as e:
                logger.error(f"Failed to activate fee schedule {schedule.id}: {e}", exc_info=True,
                             permit_type_id=schedule.permit_type_id)
                errors.append({"schedule_id": str(schedule.id), "error": str(e)})

        if due:
            logger.info(f"Fee schedule sweep finished: {processed} activated, {len(errors)} failed")
        return {"processed": processed, "errors": errors}


fee_schedule_activator = FeeScheduleActivator()


async def _run_once() -> Dict[str, Any]:
    await connect_to_mongo()
    try:
        return await fee_schedule_activator.run()
    finally:
        await close_mongo_connection()


def main():
    """Console entry point: activate due fee schedules and exit"""
    setup_logging(settings.LOG_LEVEL, settings.GRAYLOG_HOST, settings.GRAYLOG_PORT, settings.CONTAINER_NAME)
    result = asyncio.run(_run_once())
    print(f"Activated {result['processed']} fee schedule(s)")
    for error in result["errors"]:
        print(f"  {error['schedule_id']}: {error['error']}")
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
