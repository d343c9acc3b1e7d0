from datetime import date

from fastapi import APIRouter, Depends, Query

from consultbook.routes.dependencies import get_lifecycle, run_operation
from consultbook.scheduling.lifecycle import AppointmentLifecycle
from consultbook.scheduling.schemas import AvailabilityView

router = APIRouter(tags=['advisors'])


@router.get('/{advisor_id}/availability', response_model=AvailabilityView)
def get_advisor_availability(
    advisor_id: int,
    day: date = Query(alias='date'),
    lifecycle: AppointmentLifecycle = Depends(get_lifecycle),
):
    return run_operation(lifecycle.get_advisor_availability, advisor_id, day)
