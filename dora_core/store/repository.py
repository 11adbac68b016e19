import logging
from datetime import datetime
from typing import List, Optional, Tuple, Union

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from ..exceptions import StoreError
from ..models.deployment import Deployment
from ..models.incident import Incident
from ..reconciler.policy import EntityKind, DeploymentState, IncidentState
from ..schemas.deployment import DeploymentStatus
from ..schemas.incident import IncidentStatus
from ..utils import as_utc

logger = logging.getLogger("dora-core.event-store")

Record = Union[Deployment, Incident]

# kind -> (model, name of the unique external key column)
_RECORD_SETS = {
    EntityKind.DEPLOYMENT: (Deployment, "external_run_id"),
    EntityKind.INCIDENT: (Incident, "external_incident_number"),
}


class EventStore:
    """
    Deduplicated record sets for deployments and incidents.

    The unique constraint on each external key is the only serialization point:
    inserts race through ON CONFLICT DO NOTHING and existing rows are read with
    SELECT ... FOR UPDATE, so concurrent writers of the same key queue behind
    each other inside their transactions while different keys never contend.
    Every method runs inside the caller's session; the caller owns the commit.
    """

    @staticmethod
    def _insert_statement(session: AsyncSession, model):
        dialect = session.bind.dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise StoreError(f"Unsupported database dialect for upserts: {dialect}")

    async def get_for_update(self, session: AsyncSession, kind: EntityKind, external_key: str) -> Optional[Record]:
        model, key_column = _RECORD_SETS[kind]
        stmt = (
            select(model)
            .where(getattr(model, key_column) == external_key)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def open_keys(self, session: AsyncSession, kind: EntityKind, limit: Optional[int] = None) -> List[str]:
        """
        External keys of records whose upstream state can still change: in-progress
        deployments and unresolved incidents, most recently created first.
        """
        model, key_column = _RECORD_SETS[kind]
        if kind is EntityKind.DEPLOYMENT:
            still_open = Deployment.status == DeploymentStatus.IN_PROGRESS.value
        else:
            still_open = Incident.status != IncidentStatus.RESOLVED.value
        stmt = select(getattr(model, key_column)).where(still_open).order_by(model.created_at.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def insert_if_absent(
        self,
        session: AsyncSession,
        kind: EntityKind,
        external_key: str,
        state: Union[DeploymentState, IncidentState],
    ) -> bool:
        """
        Insert a new record unless one already exists for the key.
        Returns False when a concurrent writer created it first.
        """
        model, key_column = _RECORD_SETS[kind]
        values = {key_column: external_key, **self._state_values(state)}
        stmt = (
            self._insert_statement(session, model)
            .values(**values)
            .on_conflict_do_nothing(index_elements=[key_column])
            .returning(model.id)
        )
        result = await session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None
        if not inserted:
            logger.debug(f"Insert race lost for {kind.value} {external_key}; merging into existing row")
        return inserted

    @staticmethod
    def _state_values(state: Union[DeploymentState, IncidentState]) -> dict:
        if isinstance(state, DeploymentState):
            return {"status": state.status.value, "timestamp": state.timestamp}
        return {"status": state.status.value, "start_time": state.start_time, "end_time": state.end_time}

    @staticmethod
    def state_of(record: Record) -> Union[DeploymentState, IncidentState]:
        if isinstance(record, Deployment):
            return DeploymentState(status=DeploymentStatus(record.status), timestamp=as_utc(record.timestamp))
        return IncidentState(
            status=IncidentStatus(record.status),
            start_time=as_utc(record.start_time),
            end_time=as_utc(record.end_time),
        )

    def apply(self, record: Record, state: Union[DeploymentState, IncidentState]) -> None:
        for field, value in self._state_values(state).items():
            setattr(record, field, value)

    # ------------------------------------------------------------------
    # Read-only, time-scoped views (Metric Engine)
    # ------------------------------------------------------------------

    async def count_deployments(self, session: AsyncSession, start: datetime, end: datetime) -> int:
        result = await session.execute(
            select(func.count(Deployment.id)).where(Deployment.timestamp >= start, Deployment.timestamp <= end)
        )
        return result.scalar_one()

    async def count_incidents(self, session: AsyncSession, start: datetime, end: datetime) -> int:
        result = await session.execute(
            select(func.count(Incident.id)).where(Incident.start_time >= start, Incident.start_time <= end)
        )
        return result.scalar_one()

    async def resolved_incident_spans(
        self, session: AsyncSession, start: datetime, end: datetime
    ) -> List[Tuple[datetime, datetime]]:
        """(start_time, end_time) of incidents started in the window that have an end_time."""
        result = await session.execute(
            select(Incident.start_time, Incident.end_time)
            .where(
                Incident.start_time >= start,
                Incident.start_time <= end,
                Incident.end_time.is_not(None),
            )
            .order_by(Incident.start_time)
        )
        return [(as_utc(row.start_time), as_utc(row.end_time)) for row in result.all()]
