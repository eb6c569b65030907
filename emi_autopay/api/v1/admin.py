"""/v1/admin - streak configuration and scheduler operations"""

import logging
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, Query

from emi_autopay.api.dependencies import get_scheduler, get_services
from emi_autopay.api.v1.schemas import (
    BatchRunResponse,
    MilestoneRequest,
    MilestoneSchema,
    MilestoneUpdateRequest,
    SlotStatusSchema,
    StreakConfigRequest,
    StreakConfigResponse,
    StreakConfigUpdateRequest,
    StreakEnabledRequest,
    TriggerRequest,
)
from emi_autopay.domain.exceptions import DomainException
from emi_autopay.domain.models import StreakMilestone
from emi_autopay.infrastructure.database.models import StreakConfig
from emi_autopay.scheduler.jobs import AutopayScheduler
from emi_autopay.services.container import Services

router = APIRouter(prefix="/admin")


def _config_response(config: StreakConfig) -> StreakConfigResponse:
    return StreakConfigResponse(
        enabled=config.enabled,
        milestones=[
            MilestoneSchema(
                days=m.days,
                reward_cents=m.reward_cents,
                badge=m.badge,
                description=m.description or "",
                is_active=m.is_active,
            )
            for m in config.milestones
        ],
        updated_by=config.updated_by,
        updated_at=config.updated_at.isoformat() if config.updated_at else None,
    )


def _to_domain(milestones: List[MilestoneSchema]) -> List[StreakMilestone]:
    return [
        StreakMilestone(
            days=m.days,
            reward_cents=m.reward_cents,
            badge=m.badge,
            description=m.description,
            is_active=m.is_active,
        )
        for m in milestones
    ]


def _commit(services: Services, action, *args, **kwargs):
    try:
        result = action(*args, **kwargs)
        services.db.commit()
    except DomainException:
        services.db.rollback()
        raise
    return result


# ----------------------------------------------------------------------
# Streak configuration
# ----------------------------------------------------------------------


@router.get("/streak-config", response_model=StreakConfigResponse)
def get_streak_config(services: Services = Depends(get_services)):
    return _config_response(services.streak_config.get_config())


@router.post("/streak-config", response_model=StreakConfigResponse, status_code=201)
def create_streak_config(body: StreakConfigRequest, services: Services = Depends(get_services)):
    config = _commit(
        services,
        services.streak_config.create_config,
        _to_domain(body.milestones),
        enabled=body.enabled,
        updated_by=body.admin_id,
    )
    return _config_response(config)


@router.put("/streak-config", response_model=StreakConfigResponse)
def update_streak_config(body: StreakConfigUpdateRequest, services: Services = Depends(get_services)):
    milestones = _to_domain(body.milestones) if body.milestones is not None else None
    config = _commit(
        services,
        services.streak_config.update_config,
        milestones=milestones,
        enabled=body.enabled,
        updated_by=body.admin_id,
    )
    return _config_response(config)


@router.put("/streak-config/enabled", response_model=StreakConfigResponse)
def set_streak_enabled(body: StreakEnabledRequest, services: Services = Depends(get_services)):
    config = _commit(services, services.streak_config.set_enabled, body.enabled, updated_by=body.admin_id)
    return _config_response(config)


@router.delete("/streak-config", status_code=204)
def delete_streak_config(services: Services = Depends(get_services)):
    _commit(services, services.streak_config.delete_config)
    logging.info("Streak configuration deleted")


@router.post("/streak-config/milestones", response_model=StreakConfigResponse, status_code=201)
def add_milestone(body: MilestoneRequest, services: Services = Depends(get_services)):
    milestone = _to_domain([body])[0]
    _commit(services, services.streak_config.add_milestone, milestone, updated_by=body.admin_id)
    return _config_response(services.streak_config.get_config())


@router.put("/streak-config/milestones/{days}", response_model=StreakConfigResponse)
def update_milestone(days: int, body: MilestoneUpdateRequest, services: Services = Depends(get_services)):
    changes = body.model_dump(exclude={"admin_id"}, exclude_none=True)
    _commit(services, services.streak_config.update_milestone, days, updated_by=body.admin_id, **changes)
    return _config_response(services.streak_config.get_config())


@router.delete("/streak-config/milestones/{days}", response_model=StreakConfigResponse)
def delete_milestone(
    days: int,
    admin_id: str = Query(None),
    services: Services = Depends(get_services),
):
    _commit(services, services.streak_config.delete_milestone, days, updated_by=admin_id)
    return _config_response(services.streak_config.get_config())


# ----------------------------------------------------------------------
# Scheduler operations
# ----------------------------------------------------------------------


@router.post("/autopay/trigger/{slot_id}", response_model=BatchRunResponse)
def trigger_slot(
    slot_id: str,
    body: TriggerRequest = TriggerRequest(),
    scheduler: AutopayScheduler = Depends(get_scheduler),
):
    """Run an autopay slot now; re-running on the same day charges nothing twice"""
    result = scheduler.manual_trigger(slot_id, body.run_date)
    return BatchRunResponse(
        slot_id=result.slot_id,
        run_date=result.run_date,
        duration_ms=result.duration_ms,
        users=result.users,
        total_processed=result.total_processed,
        total_success=result.total_success,
        total_failed=result.total_failed,
        total_skipped=result.total_skipped,
        total_insufficient_balance=result.total_insufficient_balance,
    )


@router.get("/autopay/slots", response_model=List[SlotStatusSchema])
def list_slots(scheduler: AutopayScheduler = Depends(get_scheduler)):
    return [SlotStatusSchema(**slot) for slot in scheduler.status()]


@router.post("/commissions/reconcile")
def reconcile_commissions(
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.payments.reconcile_commissions(limit)
