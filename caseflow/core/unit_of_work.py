"""Transactional unit of work scoped to one firm.

The pipeline only talks to storage through :class:`UnitOfWork`. Nothing is
written until ``commit()``; leaving the context without committing rolls
back.
"""

from typing import Callable, Optional, Protocol
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.repositories.action_repository import ActionRepository
from caseflow.repositories.finding_repository import FindingRepository
from caseflow.repositories.pipeline_run_repository import PipelineRunRepository
from caseflow.repositories.risk_repository import RiskRepository
from caseflow.repositories.taxonomy_repository import TaxonomyRepository
from caseflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class UnitOfWork(Protocol):
    firm_id: UUID
    runs: PipelineRunRepository
    findings: FindingRepository
    actions: ActionRepository
    taxonomy: TaxonomyRepository
    risk: RiskRepository

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, exc_type, exc, tb) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


UnitOfWorkFactory = Callable[[UUID], UnitOfWork]


class SqlAlchemyUnitOfWork:
    """Unit of work over one ``AsyncSession``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], firm_id: UUID):
        self._session_factory = session_factory
        self.firm_id = firm_id
        self._session: Optional[AsyncSession] = None

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        self._session = self._session_factory()
        self.runs = PipelineRunRepository(self._session, self.firm_id)
        self.findings = FindingRepository(self._session, self.firm_id)
        self.actions = ActionRepository(self._session, self.firm_id)
        self.taxonomy = TaxonomyRepository(self._session, self.firm_id)
        self.risk = RiskRepository(self._session, self.firm_id)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type is not None:
                LOGGER.debug("Rolling back unit of work", extra={"firm_id": str(self.firm_id)})
            await self.rollback()
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        # No-op when the last commit already ended the transaction
        await self._session.rollback()


def sqlalchemy_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Build a per-firm unit of work factory on ``session_factory``."""

    def factory(firm_id: UUID) -> SqlAlchemyUnitOfWork:
        return SqlAlchemyUnitOfWork(session_factory, firm_id)

    return factory
