from __future__ import annotations

import uuid

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session

from crm_automation.automation.errors import AutomationInactiveError, AutomationNotFoundError
from crm_automation.automation.factory import build_automation_engine
from crm_automation.automation.schemas import (
    AutomationCreate,
    AutomationLogRead,
    AutomationRead,
    AutomationUpdate,
    ManualRunRequest,
    ManualRunResponse,
)
from crm_automation.automation.service import AutomationService
from crm_automation.core.database import get_db
from crm_automation.crm.api import error_response, get_current_user, require_permission
from crm_automation.crm.service import ActorUser


router = APIRouter(prefix="/api/automations", tags=["automations"])
service = AutomationService()


@router.get("", response_model=list[AutomationRead])
def list_automations(
    request: Request,
    trigger_type: str | None = Query(default=None),
    is_active: bool | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return service.list_automations(db, user, trigger_type=trigger_type, is_active=is_active)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_list_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("", response_model=AutomationRead, status_code=status.HTTP_201_CREATED)
def create_automation(
    request: Request,
    dto: AutomationCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return service.create_automation(db, user, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_create_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{automation_id}", response_model=AutomationRead)
def get_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return service.get_automation(db, user, automation_id)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_get_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.patch("/{automation_id}", response_model=AutomationRead)
def update_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: AutomationUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AutomationRead | JSONResponse:
    try:
        require_permission(user, "automations.manage")
        return service.update_automation(db, user, automation_id, dto)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_update_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.delete("/{automation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_automation(
    request: Request,
    automation_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_permission(user, "automations.manage")
        service.delete_automation(db, user, automation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_delete_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.get("/{automation_id}/logs", response_model=list[AutomationLogRead])
def list_automation_logs(
    request: Request,
    automation_id: uuid.UUID,
    status_filter: str | None = Query(default=None, alias="status"),
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[AutomationLogRead] | JSONResponse:
    try:
        require_permission(user, "automations.read")
        return service.list_logs(db, user, automation_id, status_filter=status_filter, limit=limit)
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_logs_failed",
            message=str(exc.detail),
            details=exc.detail,
        )


@router.post("/{automation_id}/run", response_model=ManualRunResponse)
def run_automation(
    request: Request,
    automation_id: uuid.UUID,
    dto: ManualRunRequest | None = Body(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> ManualRunResponse | JSONResponse:
    try:
        require_permission(user, "automations.execute")
        result = build_automation_engine(db).run_now(
            user.tenant_id,
            automation_id,
            test_payload=dto.test_payload if dto is not None else None,
            acting_user_id=user.user_id,
        )
    except HTTPException as exc:
        return error_response(
            request,
            status_code=exc.status_code,
            code="automation_run_failed",
            message=str(exc.detail),
            details=exc.detail,
        )
    except AutomationNotFoundError as exc:
        return error_response(
            request,
            status_code=status.HTTP_404_NOT_FOUND,
            code="automation_not_found",
            message=str(exc),
            details={"automation_id": exc.automation_id},
        )
    except AutomationInactiveError as exc:
        return error_response(
            request,
            status_code=status.HTTP_409_CONFLICT,
            code="automation_inactive",
            message=str(exc),
            details={"automation_id": exc.automation_id},
        )

    return ManualRunResponse(
        automation_id=result.automation_id,
        name=result.name,
        matched=result.matched,
        status=result.status,
        error_detail=result.error_detail,
        action_results=result.action_results,
    )
