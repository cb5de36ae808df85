"""Terminal audit admin API.

Blacklist rule management, audit browsing, forced disconnect and recording
download.
"""

import logging
import math

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import FileResponse
from sqlalchemy.ext.asyncio import AsyncSession

from termaudit.api.deps import get_optional_user_id, get_recorder, get_registry, get_rule_cache
from termaudit.core import get_db
from termaudit.core.exceptions import (
    InvalidPatternError,
    RecordingNotFoundError,
    RuleNotFoundError,
    SessionAlreadyEndedError,
    SessionNotFoundError,
)
from termaudit.schemas.blacklist import (
    BlacklistRuleCreate,
    BlacklistRuleListResponse,
    BlacklistRuleResponse,
    BlacklistRuleUpdate,
)
from termaudit.schemas.terminal_audit import (
    TerminalCommandListResponse,
    TerminalCommandResponse,
    TerminalSessionListResponse,
    TerminalSessionResponse,
)
from termaudit.services.audit_query import AuditQueryService
from termaudit.services.blacklist import BlacklistService
from termaudit.services.recorder import Recorder
from termaudit.services.rule_cache import RuleCache
from termaudit.services.session_tracker import SessionRegistry

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/terminal", tags=["terminal-audit"])


# --- Blacklist rules ---


@router.get("/blacklist", response_model=BlacklistRuleListResponse)
async def list_blacklist_rules(
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
) -> BlacklistRuleListResponse:
    """List all rules in evaluation order."""
    rules = await BlacklistService(db, cache).list_rules()
    return BlacklistRuleListResponse(
        items=[BlacklistRuleResponse.model_validate(r) for r in rules],
        total=len(rules),
        snapshot_version=cache.version,
    )


@router.post(
    "/blacklist",
    response_model=BlacklistRuleResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_blacklist_rule(
    data: BlacklistRuleCreate,
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
    user_id: int | None = Depends(get_optional_user_id),
) -> BlacklistRuleResponse:
    """Create a rule. The pattern is vetted before it is stored."""
    service = BlacklistService(db, cache)
    try:
        rule = await service.create(**data.model_dump(), created_by=user_id)
    except InvalidPatternError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.reason,
        ) from e
    return BlacklistRuleResponse.model_validate(rule)


@router.patch("/blacklist/{rule_id}", response_model=BlacklistRuleResponse)
async def update_blacklist_rule(
    rule_id: int,
    data: BlacklistRuleUpdate,
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
) -> BlacklistRuleResponse:
    """Partially update a rule."""
    service = BlacklistService(db, cache)
    try:
        rule = await service.update(rule_id, **data.model_dump(exclude_unset=True))
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except InvalidPatternError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=e.reason,
        ) from e
    return BlacklistRuleResponse.model_validate(rule)


@router.delete("/blacklist/{rule_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_blacklist_rule(
    rule_id: int,
    db: AsyncSession = Depends(get_db),
    cache: RuleCache = Depends(get_rule_cache),
) -> Response:
    """Delete a rule."""
    try:
        await BlacklistService(db, cache).delete(rule_id)
    except RuleNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# --- Audit browsing ---


@router.get("/audit/sessions", response_model=TerminalSessionListResponse)
async def list_sessions(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=200),
    user_id: int | None = Query(None),
    server_id: int | None = Query(None),
    snapshot_id: int | None = Query(None, ge=0, description="Pin results to ids <= this"),
    db: AsyncSession = Depends(get_db),
) -> TerminalSessionListResponse:
    """List terminal sessions, oldest first."""
    service = AuditQueryService(db)
    if snapshot_id is None:
        snapshot_id = await service.latest_session_id()
    sessions, total = await service.list_sessions(
        page=page,
        page_size=page_size,
        user_id=user_id,
        server_id=server_id,
        snapshot_id=snapshot_id,
    )
    return TerminalSessionListResponse(
        items=[TerminalSessionResponse.model_validate(s) for s in sessions],
        total=total,
        page=page,
        page_size=page_size,
        pages=max(1, math.ceil(total / page_size)),
        snapshot_id=snapshot_id,
    )


@router.get("/audit/sessions/{session_id}", response_model=TerminalSessionResponse)
async def get_session(
    session_id: int,
    db: AsyncSession = Depends(get_db),
) -> TerminalSessionResponse:
    """Get a single terminal session."""
    try:
        session = await AuditQueryService(db).get_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return TerminalSessionResponse.model_validate(session)


@router.get("/audit/commands", response_model=TerminalCommandListResponse)
async def list_commands(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    session_id: int | None = Query(None),
    blocked: bool | None = Query(None),
    snapshot_id: int | None = Query(None, ge=0, description="Pin results to ids <= this"),
    db: AsyncSession = Depends(get_db),
) -> TerminalCommandListResponse:
    """List audited commands in execution order."""
    service = AuditQueryService(db)
    if snapshot_id is None:
        snapshot_id = await service.latest_command_id()
    commands, total = await service.list_commands(
        page=page,
        page_size=page_size,
        session_id=session_id,
        blocked=blocked,
        snapshot_id=snapshot_id,
    )
    return TerminalCommandListResponse(
        items=[TerminalCommandResponse.model_validate(c) for c in commands],
        total=total,
        page=page,
        page_size=page_size,
        pages=max(1, math.ceil(total / page_size)),
        snapshot_id=snapshot_id,
    )


@router.post("/audit/sessions/{session_id}/terminate", response_model=TerminalSessionResponse)
async def terminate_session(
    session_id: int,
    registry: SessionRegistry = Depends(get_registry),
) -> TerminalSessionResponse:
    """Force a live session to end."""
    try:
        session = await registry.terminate(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SessionAlreadyEndedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    logger.info(f"Admin terminated terminal session {session_id}", extra={"session_id": session_id})
    return TerminalSessionResponse.model_validate(session)


@router.get("/audit/sessions/{session_id}/recording")
async def download_recording(
    session_id: int,
    db: AsyncSession = Depends(get_db),
    recorder: Recorder = Depends(get_recorder),
) -> FileResponse:
    """Download the gzip asciicast recording of a session."""
    try:
        session = await AuditQueryService(db).get_session(session_id)
        path = recorder.get_recording(session)
    except (SessionNotFoundError, RecordingNotFoundError) as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    return FileResponse(path, media_type="application/gzip", filename=path.name)
