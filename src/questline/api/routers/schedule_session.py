"""Schedule-session web boundary.

``GET /schedule_session/{flow_id}`` proposes the next session of the flow's
series; ``POST /schedule_session/{flow_id}`` takes the submitted form and
schedules it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request

from questline.api.deps import FlowServices
from questline.api.models import ApiResponse, ProposedSessionResponse, ScheduleSessionResponse
from questline.errors import FlowError, FlowNotFoundError
from questline.flow.form import parse_schedule_form, propose_next_session
from questline.flow.schedule_session import ScheduleSessionFlow
from questline.reconcile.series import latest_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/schedule_session", tags=["schedule_session"])


def _get_flow_services() -> FlowServices:
    """Dependency stub -- overridden at app startup or in tests."""
    raise RuntimeError("FlowServices not initialized")


async def _retrieve_flow(services: FlowServices, flow_id: int) -> ScheduleSessionFlow:
    services.ensure_accepting()
    flow = await ScheduleSessionFlow.retrieve(services.redis, flow_id)
    if flow is None:
        raise FlowNotFoundError(flow_id)
    return flow


@router.get("/{flow_id}", response_model=ApiResponse[ProposedSessionResponse])
async def get_schedule_session(
    flow_id: int,
    services: FlowServices = Depends(_get_flow_services),
) -> ApiResponse[ProposedSessionResponse]:
    """Return the latest event of the series and a proposed date for the next one."""
    flow = await _retrieve_flow(services, flow_id)
    event = await latest_event(services.store, flow.event_series_id)
    if event is None:
        raise FlowError("Cannot schedule a continuation session without an initial event")

    proposed = propose_next_session(
        event.start_time,
        tz=services.config.tzinfo,
        duration_min=services.config.default_duration_min,
    )
    return ApiResponse[ProposedSessionResponse](
        data=ProposedSessionResponse(
            flow_id=str(flow.id),
            title=event.title,
            link=event.url,
            year=proposed.start.year,
            month=proposed.start.month,
            day=proposed.start.day,
            hour=proposed.start.hour,
            minute=proposed.start.minute,
            duration=proposed.duration_min,
            selectable_years=proposed.selectable_years,
        )
    )


@router.post("/{flow_id}", response_model=ApiResponse[ScheduleSessionResponse])
async def post_schedule_session(
    flow_id: int,
    request: Request,
    services: FlowServices = Depends(_get_flow_services),
) -> ApiResponse[ScheduleSessionResponse]:
    """Schedule the next session from the submitted form fields."""
    flow = await _retrieve_flow(services, flow_id)
    form = await request.form()
    data = {key: value for key, value in form.items() if isinstance(value, str)}
    submission = parse_schedule_form(
        data,
        tz=services.config.tzinfo,
        default_duration_min=services.config.default_duration_min,
        max_duration_min=services.config.max_duration_min,
    )

    result = await services.scheduler.schedule(
        flow,
        submission.start,
        is_open_event=submission.open_game,
        transfer_rsvps=submission.transfer_rsvps,
        duration_min=submission.duration_min,
    )
    logger.info("Flow %s scheduled %s (%s)", flow.id, result.title, result.source)
    return ApiResponse[ScheduleSessionResponse](
        data=ScheduleSessionResponse(
            title=result.title,
            link=result.link,
            source=str(result.source),
            migrated=result.migrated,
            closed_rsvps=result.closed_rsvps,
            transferred_rsvps=result.transferred_rsvps,
        )
    )
