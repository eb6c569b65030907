"""/v1/autopay - per-order autopay controls, settings and read models"""

import uuid
from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from emi_autopay.api.dependencies import get_services, get_today, parse_order_id
from emi_autopay.api.v1.schemas import (
    AutopayAttemptSchema,
    AutopayOrderResponse,
    AutopaySettingsSchema,
    BulkAutopayResponse,
    EnableAutopayRequest,
    ForecastDaySchema,
    ForecastResponse,
    HistoryResponse,
    MilestoneSchema,
    PauseRequest,
    PriorityRequest,
    SkipDatesRequest,
    SkipDatesResponse,
    StreakResponse,
    UpdateSettingsRequest,
    UserActionRequest,
)
from emi_autopay.domain.exceptions import DomainException
from emi_autopay.domain.models import StreakMilestone
from emi_autopay.infrastructure.database.models import InstallmentOrder
from emi_autopay.services.container import Services

router = APIRouter(prefix="/autopay")


def _order_view(order: InstallmentOrder) -> AutopayOrderResponse:
    return AutopayOrderResponse(
        order_id=str(order.id),
        autopay_enabled=order.autopay_enabled,
        autopay_priority=order.autopay_priority,
        autopay_paused_until=order.autopay_paused_until,
    )


def milestone_schema(milestone: Optional[StreakMilestone]) -> Optional[MilestoneSchema]:
    if milestone is None:
        return None
    return MilestoneSchema(
        days=milestone.days,
        reward_cents=milestone.reward_cents,
        badge=milestone.badge,
        description=milestone.description,
        is_active=milestone.is_active,
    )


def _commit(services: Services, action, *args, **kwargs):
    """Run one mutation and commit it, rolling back on domain errors"""
    try:
        result = action(*args, **kwargs)
        services.db.commit()
    except DomainException:
        services.db.rollback()
        raise
    return result


# ----------------------------------------------------------------------
# Per-order controls
# ----------------------------------------------------------------------


@router.post("/orders/{order_id}/enable", response_model=AutopayOrderResponse)
def enable_autopay(
    body: EnableAutopayRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    order = _commit(services, services.autopay.enable_autopay, order_id, body.user_id, body.priority)
    return _order_view(order)


@router.post("/orders/{order_id}/disable", response_model=AutopayOrderResponse)
def disable_autopay(
    body: UserActionRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    order = _commit(services, services.autopay.disable_autopay, order_id, body.user_id)
    return _order_view(order)


@router.post("/orders/{order_id}/pause", response_model=AutopayOrderResponse)
def pause_autopay(
    body: PauseRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    order = _commit(services, services.autopay.pause_autopay, order_id, body.user_id, body.pause_until, today)
    return _order_view(order)


@router.post("/orders/{order_id}/resume", response_model=AutopayOrderResponse)
def resume_autopay(
    body: UserActionRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    order = _commit(services, services.autopay.resume_autopay, order_id, body.user_id)
    return _order_view(order)


@router.put("/orders/{order_id}/priority", response_model=AutopayOrderResponse)
def set_priority(
    body: PriorityRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    order = _commit(services, services.autopay.set_priority, order_id, body.user_id, body.priority)
    return _order_view(order)


@router.post("/orders/{order_id}/skip-dates", response_model=SkipDatesResponse)
def add_skip_dates(
    body: SkipDatesRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    dates = _commit(services, services.autopay.add_skip_dates, order_id, body.user_id, body.dates, today)
    return SkipDatesResponse(order_id=str(order_id), skip_dates=dates)


@router.delete("/orders/{order_id}/skip-dates", response_model=SkipDatesResponse)
def remove_skip_dates(
    body: SkipDatesRequest,
    order_id: uuid.UUID = Depends(parse_order_id),
    services: Services = Depends(get_services),
):
    dates = _commit(services, services.autopay.remove_skip_dates, order_id, body.user_id, body.dates)
    return SkipDatesResponse(order_id=str(order_id), skip_dates=dates)


@router.post("/enable-all", response_model=BulkAutopayResponse)
def enable_all(body: UserActionRequest, services: Services = Depends(get_services)):
    count = _commit(services, services.autopay.enable_autopay_for_all, body.user_id)
    return BulkAutopayResponse(user_id=body.user_id, enabled=True, orders_updated=count)


@router.post("/disable-all", response_model=BulkAutopayResponse)
def disable_all(body: UserActionRequest, services: Services = Depends(get_services)):
    count = _commit(services, services.autopay.disable_autopay_for_all, body.user_id)
    return BulkAutopayResponse(user_id=body.user_id, enabled=False, orders_updated=count)


# ----------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------


@router.get("/settings", response_model=AutopaySettingsSchema)
def get_settings(user_id: str = Query(..., min_length=1), services: Services = Depends(get_services)):
    return AutopaySettingsSchema(**services.autopay.get_settings(user_id))


@router.put("/settings", response_model=AutopaySettingsSchema)
def update_settings(body: UpdateSettingsRequest, services: Services = Depends(get_services)):
    changes = body.model_dump(exclude={"user_id"}, exclude_none=True)
    updated = _commit(services, services.autopay.update_settings, body.user_id, **changes)
    return AutopaySettingsSchema(**updated)


# ----------------------------------------------------------------------
# Read models
# ----------------------------------------------------------------------


@router.get("/status")
def autopay_status(
    user_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
) -> Dict[str, Any]:
    return services.autopay.autopay_status(user_id, today)


@router.get("/dashboard")
def dashboard(
    user_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
) -> Dict[str, Any]:
    view = services.autopay.dashboard(user_id, today)
    streak = view["streak"]
    streak["next_milestone"] = milestone_schema(streak["next_milestone"])
    return view


@router.get("/forecast", response_model=ForecastResponse)
def forecast(
    user_id: str = Query(..., min_length=1),
    days: int = Query(30, ge=1),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    """Day-by-day balance projection; longer requests are capped at 90 days"""
    view = services.autopay.balance_forecast(user_id, days, today)
    view["forecast"] = [
        ForecastDaySchema(
            date=d.date,
            day_number=d.day_number,
            start_balance_cents=d.start_balance_cents,
            deduction_cents=d.deduction_cents,
            end_balance_cents=d.end_balance_cents,
            order_ids=d.order_ids,
            insufficient_funds=d.insufficient_funds,
            shortfall_cents=d.shortfall_cents,
        )
        for d in view["forecast"]
    ]
    return ForecastResponse(**view)


@router.get("/suggested-top-up")
def suggested_top_up(
    user_id: str = Query(..., min_length=1),
    days: Optional[int] = Query(None, ge=1, le=90),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
) -> Dict[str, Any]:
    return services.autopay.suggested_top_up(user_id, today, days)


@router.get("/history", response_model=HistoryResponse)
def history(
    user_id: str = Query(..., min_length=1),
    page: int = Query(1, ge=1),
    limit: Optional[int] = Query(None, ge=1, le=100),
    services: Services = Depends(get_services),
):
    view = services.autopay.history(user_id, page, limit)
    items = [
        AutopayAttemptSchema(
            order_id=str(a.order_id),
            attempt_date=a.attempt_date,
            status=a.status,
            amount_cents=a.amount_cents,
            error_message=a.error_message,
            payment_id=str(a.payment_id) if a.payment_id else None,
        )
        for a in view["items"]
    ]
    return HistoryResponse(
        user_id=user_id,
        items=items,
        page=view["page"],
        limit=view["limit"],
        total=view["total"],
        pages=view["pages"],
    )


@router.get("/streak", response_model=StreakResponse)
def streak(
    user_id: str = Query(..., min_length=1),
    services: Services = Depends(get_services),
    today: date = Depends(get_today),
):
    info = services.streaks.streak_info(user_id, today)
    info["next_milestone"] = milestone_schema(info["next_milestone"])
    return StreakResponse(**info)
