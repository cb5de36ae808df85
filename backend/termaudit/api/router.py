"""TermAudit API Router - aggregates all API routes."""

from fastapi import APIRouter

from termaudit.api import terminal_audit, terminal_proxy

# Main API router - all routes will be prefixed with /api
api_router = APIRouter(prefix="/api")

# Include routers
api_router.include_router(terminal_proxy.router)
api_router.include_router(terminal_audit.router)
