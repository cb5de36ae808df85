"""PTY proxy endpoints.

The proxy opens a session per terminal stream, asks for a verdict at every
command boundary, streams raw frames for recording and reports the close.
The command check always answers with a verdict.
"""

import base64
import binascii

from fastapi import APIRouter, Depends, HTTPException, status

from termaudit.api.deps import get_registry, get_user_id
from termaudit.core.exceptions import (
    SessionAlreadyEndedError,
    SessionAlreadyExistsError,
    SessionNotFoundError,
)
from termaudit.schemas.terminal_audit import (
    CommandCheckRequest,
    CommandCheckResponse,
    FrameRequest,
    FrameResponse,
    SessionCloseRequest,
    SessionOpenRequest,
    SessionOpenResponse,
    TerminalSessionResponse,
)
from termaudit.services.session_tracker import SessionRegistry

router = APIRouter(prefix="/terminal", tags=["terminal-proxy"])


@router.post(
    "/sessions",
    response_model=SessionOpenResponse,
    status_code=status.HTTP_201_CREATED,
)
async def open_session(
    data: SessionOpenRequest,
    user_id: int = Depends(get_user_id),
    registry: SessionRegistry = Depends(get_registry),
) -> SessionOpenResponse:
    """Register a new terminal session for a stream."""
    try:
        tracker = await registry.open_session(
            user_id=user_id,
            server_id=data.server_id,
            stream_id=data.stream_id,
            username=data.username,
            server_name=data.server_name,
            recording_enabled=data.recording_enabled,
            width=data.width,
            height=data.height,
        )
    except SessionAlreadyExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return SessionOpenResponse(
        session_id=tracker.session_id,
        stream_id=tracker.stream_id,
        recording_enabled=tracker.recording_enabled,
    )


@router.post("/check-command", response_model=CommandCheckResponse)
async def check_command(
    data: CommandCheckRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> CommandCheckResponse:
    """Evaluate a command boundary and record it."""
    result = await registry.handle_command(
        data.stream_id,
        data.command,
        working_dir=data.working_dir,
        exit_code=data.exit_code,
        executed_at=data.executed_at,
    )
    verdict = result.verdict
    return CommandCheckResponse(
        blocked=verdict.blocked,
        reason=verdict.reason,
        action=verdict.action,
        decision=verdict.decision.value,
        rule_id=verdict.matched_rule_id,
        snapshot_version=verdict.snapshot_version,
        durable=result.durable,
    )


@router.post("/sessions/{stream_id}/frames", response_model=FrameResponse)
async def record_frame(
    stream_id: str,
    data: FrameRequest,
    registry: SessionRegistry = Depends(get_registry),
) -> FrameResponse:
    """Append a raw I/O frame to the session recording."""
    try:
        raw = base64.b64decode(data.data, validate=True)
    except binascii.Error as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="data must be base64 encoded",
        ) from e
    return FrameResponse(accepted=registry.record_frame(stream_id, raw, data.direction))


@router.post("/sessions/{stream_id}/close", response_model=TerminalSessionResponse)
async def close_session(
    stream_id: str,
    data: SessionCloseRequest | None = None,
    registry: SessionRegistry = Depends(get_registry),
) -> TerminalSessionResponse:
    """Normal close or idle timeout of a stream."""
    reason = data.reason if data else "closed"
    try:
        session = await registry.close_session(stream_id, reason=reason)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except SessionAlreadyEndedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    return TerminalSessionResponse.model_validate(session)
