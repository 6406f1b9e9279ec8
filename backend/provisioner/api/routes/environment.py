"""
═══════════════════════════════════════════════════════════════════════════
ENVIRONMENT API - check, install, cancel and remove OCR dependencies
═══════════════════════════════════════════════════════════════════════════

Installs run in the background: POST /install/{kind} answers 202 right away,
progress is polled from /progress/{kind} or pushed over /ws/environment.
Provisioning errors are mapped to HTTP codes by the handler in main.py.
"""

from typing import Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from provisioner.api.dependencies import get_provisioning_service
from provisioner.middleware.auth import maybe_require_api_key
from provisioner.middleware.rate_limit import CHECK_LIMIT, INSTALL_LIMIT, client_and_kind, limiter
from provisioner.models.provisioning import (
    DependencyKind,
    DependencyState,
    EnvironmentSnapshot,
    ProgressEvent,
)
from provisioner.services.provisioning_service import ProvisioningService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/environment", tags=["environment"])


class CheckResult(BaseModel):
    kind: DependencyKind
    state: DependencyState
    snapshot: EnvironmentSnapshot


class InstallAccepted(BaseModel):
    kind: DependencyKind
    session_id: str
    progress: int
    progress_url: str


class CancelResult(BaseModel):
    kind: DependencyKind
    cancelled: bool


# ═══════════════════════════════════════════════════════════════════════════
# READ
# ═══════════════════════════════════════════════════════════════════════════

@router.get("", response_model=EnvironmentSnapshot)
async def get_environment(service: ProvisioningService = Depends(get_provisioning_service)):
    """Current snapshot, without probing."""
    return service.current_snapshot()


@router.get("/ready", response_model=EnvironmentSnapshot)
async def get_ready(service: ProvisioningService = Depends(get_provisioning_service)):
    """200 when OCR can run, 409 listing the missing dependencies otherwise."""
    return service.ensure_ready()


@router.get("/guides")
async def get_guides(service: ProvisioningService = Depends(get_provisioning_service)):
    """Manual installation guides per dependency."""
    return service.install_guides()


@router.get("/progress/{kind}", response_model=ProgressEvent)
async def get_progress(kind: DependencyKind, service: ProvisioningService = Depends(get_provisioning_service)):
    event = service.latest_progress(kind)
    if event is None:
        raise HTTPException(404, f"No install progress recorded for {kind.value}")
    return event


# ═══════════════════════════════════════════════════════════════════════════
# CHECK
# ═══════════════════════════════════════════════════════════════════════════

@router.post("/check", response_model=EnvironmentSnapshot)
@limiter.limit(CHECK_LIMIT)
async def check_environment(
    request: Request,
    service: ProvisioningService = Depends(get_provisioning_service),
    _auth: Optional[str] = Depends(maybe_require_api_key)
):
    return await service.check_all()


@router.post("/check/{kind}", response_model=CheckResult)
@limiter.limit(CHECK_LIMIT)
async def check_dependency(
    request: Request,
    kind: DependencyKind,
    service: ProvisioningService = Depends(get_provisioning_service),
    _auth: Optional[str] = Depends(maybe_require_api_key)
):
    state = await service.check(kind)
    return CheckResult(kind=kind, state=state, snapshot=service.current_snapshot())


# ═══════════════════════════════════════════════════════════════════════════
# INSTALL / CANCEL / REMOVE
# ═══════════════════════════════════════════════════════════════════════════

@router.post("/install/{kind}", status_code=202, response_model=InstallAccepted)
@limiter.limit(INSTALL_LIMIT, key_func=client_and_kind)
async def install_dependency(
    request: Request,
    kind: DependencyKind,
    service: ProvisioningService = Depends(get_provisioning_service),
    _auth: Optional[str] = Depends(maybe_require_api_key)
):
    session = await service.start_install(kind)
    logger.info(f"Install of {kind.value} accepted: session {session.session_id[:8]}")
    return InstallAccepted(
        kind=kind,
        session_id=session.session_id,
        progress=session.progress,
        progress_url=f"/environment/progress/{kind.value}",
    )


@router.post("/cancel/{kind}", response_model=CancelResult)
async def cancel_install(
    kind: DependencyKind,
    service: ProvisioningService = Depends(get_provisioning_service),
    _auth: Optional[str] = Depends(maybe_require_api_key)
):
    return CancelResult(kind=kind, cancelled=service.cancel(kind))


@router.delete("/{kind}", response_model=EnvironmentSnapshot)
@limiter.limit(INSTALL_LIMIT, key_func=client_and_kind)
async def remove_dependency(
    request: Request,
    kind: DependencyKind,
    service: ProvisioningService = Depends(get_provisioning_service),
    _auth: Optional[str] = Depends(maybe_require_api_key)
):
    return await service.remove(kind)
