"""Orchestrator control routes: start, pause, resume and runtime tuning."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from media_upload_engine.api.dependencies import get_upload_manager
from media_upload_engine.api.routes.errors import raise_http_exception
from media_upload_engine.application.services import UploadManager
from media_upload_engine.domain.errors import UploadJobValidationError
from media_upload_engine.domain.monitoring_models import (
    ConcurrencyUpdateRequest,
    ScheduleUpdateRequest,
    ThrottleUpdateRequest,
    UploadManagerStatus,
)
from media_upload_engine.domain.schedule import (
    SCHEDULE_PRESETS,
    ThrottleSchedule,
    UploadSchedule,
    parse_rules,
)
from media_upload_engine.infrastructure.transfers.runtime import mbps_to_bytes_per_second

router = APIRouter(prefix="/control", tags=["control"])


def _schedule_from_request(request: ScheduleUpdateRequest) -> UploadSchedule:
    if request.preset is not None:
        preset = SCHEDULE_PRESETS.get(request.preset)
        if preset is None:
            raise UploadJobValidationError(f"Unknown schedule preset '{request.preset}'.")
        return UploadSchedule(enabled=request.enabled, mode=preset.mode, rules=preset.rules)
    try:
        rules = parse_rules(request.rules)
    except ValueError as exc:
        raise UploadJobValidationError(str(exc)) from exc
    return UploadSchedule(enabled=request.enabled, mode=request.mode, rules=rules)


@router.get("/status", response_model=UploadManagerStatus, status_code=200)
async def get_status(
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    try:
        return await manager.get_status()
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/start", response_model=UploadManagerStatus, status_code=200)
async def start(
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    try:
        return await manager.start()
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/pause", response_model=UploadManagerStatus, status_code=200)
async def pause(
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    """Stop admitting queued jobs; running uploads continue."""

    try:
        return await manager.pause()
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.post("/resume", response_model=UploadManagerStatus, status_code=200)
async def resume(
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    try:
        return await manager.resume()
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.put("/schedule", response_model=UploadManagerStatus, status_code=200)
async def update_schedule(
    request: ScheduleUpdateRequest,
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    try:
        return await manager.update_schedule(_schedule_from_request(request))
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.put("/concurrency", response_model=UploadManagerStatus, status_code=200)
async def update_concurrency(
    request: ConcurrencyUpdateRequest,
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    try:
        return await manager.set_max_concurrent(request.max_concurrent)
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


@router.put("/throttle", response_model=UploadManagerStatus, status_code=200)
async def update_throttle(
    request: ThrottleUpdateRequest,
    manager: UploadManager = Depends(get_upload_manager),
) -> UploadManagerStatus:
    """Set the global upload bandwidth limit and its time-of-day overrides."""

    try:
        try:
            rules = parse_rules(request.rules)
        except ValueError as exc:
            raise UploadJobValidationError(str(exc)) from exc
        return await manager.configure_throttle(
            mbps_to_bytes_per_second(request.max_upload_speed_mbps),
            ThrottleSchedule(rules=rules) if rules else None,
        )
    except Exception as exc:  # noqa: BLE001
        raise_http_exception(exc)


__all__ = ["router"]
