"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from typing import Annotated
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from hr_ledger.approvals import (
    ApprovalEngine,
    DatabaseIdentityProvider,
    WorkflowRegistry,
    default_adapters,
)
from hr_ledger.config import Settings
from hr_ledger.database import get_session
from hr_ledger.events import EventEmitter
from hr_ledger.services import PayrollRunService, ReportingService


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """One request is one unit of work."""
    async with get_session() as session:
        yield session


async def get_actor_id(
    x_user_id: Annotated[str | None, Header()] = None
) -> UUID:
    """Extract the acting user ID from header."""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-User-ID header is required",
        )
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-User-ID format",
        )


async def get_event_emitter(request: Request) -> AsyncGenerator[EventEmitter, None]:
    """The app emitter, holding this request's events until it finishes.

    Dependencies taking both the emitter and the session list the emitter
    first, so the batch closes after the session commits. A rolled-back
    request publishes nothing.
    """
    emitter = request.app.state.emitter
    with emitter.batch():
        yield emitter


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
ActorId = Annotated[UUID, Depends(get_actor_id)]
Emitter = Annotated[EventEmitter, Depends(get_event_emitter)]
AppSettings = Annotated[Settings, Depends(get_app_settings)]


async def get_approval_engine(
    emitter: Emitter,
    db: DbSession,
    settings: AppSettings,
) -> ApprovalEngine:
    registry = await WorkflowRegistry.from_database(db)
    return ApprovalEngine(
        db,
        registry,
        default_adapters(db),
        identity=DatabaseIdentityProvider(db),
        emitter=emitter,
        admin_roles=settings.admin_roles,
    )


def get_payroll_service(
    emitter: Emitter,
    db: DbSession,
    settings: AppSettings,
) -> PayrollRunService:
    return PayrollRunService(
        db,
        identity=DatabaseIdentityProvider(db),
        emitter=emitter,
        settings=settings,
    )


def get_reporting_service(db: DbSession) -> ReportingService:
    return ReportingService(db)


Engine = Annotated[ApprovalEngine, Depends(get_approval_engine)]
PayrollService = Annotated[PayrollRunService, Depends(get_payroll_service)]
Reporting = Annotated[ReportingService, Depends(get_reporting_service)]
