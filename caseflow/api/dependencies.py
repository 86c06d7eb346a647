"""FastAPI dependencies shared by the v1 endpoints."""

from typing import Annotated, AsyncGenerator
from uuid import UUID

from fastapi import Depends, Header
from temporalio.client import Client as TemporalClient

from caseflow.core.database import async_session_maker
from caseflow.core.temporal_client import get_temporal_client
from caseflow.core.unit_of_work import SqlAlchemyUnitOfWork, UnitOfWork
from caseflow.services.pipeline.pipeline_service import PipelineService


async def get_firm_id(x_firm_id: Annotated[UUID, Header(alias="X-Firm-Id")]) -> UUID:
    """Tenant of the request, set by the authenticating gateway."""
    return x_firm_id


async def get_unit_of_work(
    firm_id: Annotated[UUID, Depends(get_firm_id)],
) -> AsyncGenerator[UnitOfWork, None]:
    async with SqlAlchemyUnitOfWork(async_session_maker, firm_id) as uow:
        yield uow


async def get_pipeline_service(
    uow: Annotated[UnitOfWork, Depends(get_unit_of_work)],
) -> PipelineService:
    return PipelineService(uow)


async def get_temporal() -> TemporalClient:
    return await get_temporal_client()
