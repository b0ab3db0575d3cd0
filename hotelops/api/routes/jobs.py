from __future__ import annotations

import logging

from fastapi import APIRouter

from hotelops.dependencies.auth import SystemActor
from hotelops.dependencies.services import ServicesDep
from hotelops.services.container import run_assignment_job, run_import_job

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/internal/jobs", tags=["jobs"])


@router.post("/auto-assign")
async def auto_assign(_: SystemActor, services: ServicesDep) -> dict[str, object]:
    report = await run_assignment_job(services)
    logger.info("Auto-assign run: %s", report.to_dict())
    return report.to_dict()


@router.post("/booking-imports")
async def booking_imports(_: SystemActor, services: ServicesDep) -> dict[str, object]:
    report = await run_import_job(services)
    logger.info("Booking import run: %s", report.to_dict())
    return report.to_dict()
