import logging
from typing import Any, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import ConflictError, StoreError
from ..store.repository import EventStore
from .policy import (
    EntityKind,
    ReconcileOutcome,
    coerce_kind,
    merge_deployment,
    merge_incident,
    normalize_observation,
    validate_external_key,
)

logger = logging.getLogger("dora-core.reconciler")


class Reconciler:
    """
    Ingestion Reconciler.
    Responsibility: the single upsert/merge path shared by the webhook and
    backfill ingest paths. Each call is one transaction: lock (or create) the
    record for the external key, merge the observation under the monotonic
    policy, commit.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], store: EventStore | None = None):
        self._session_factory = session_factory
        self._store = store or EventStore()

    async def reconcile(self, kind: Any, external_key: Any, observed: Mapping[str, Any]) -> ReconcileOutcome:
        kind = coerce_kind(kind)
        key = validate_external_key(external_key)
        fields = normalize_observation(kind, observed)

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    outcome = await self._reconcile_in_session(session, kind, key, fields)
        except ConflictError as e:
            logger.warning(f"Conflict reconciling {kind.value} {key}: {e}")
            raise
        except SQLAlchemyError as e:
            logger.error(f"Store failure reconciling {kind.value} {key}: {e}", exc_info=True)
            raise StoreError(f"Failed to reconcile {kind.value} {key}: {e}") from e

        logger.debug(f"Reconciled {kind.value} {key}: {outcome.value}")
        return outcome

    async def open_keys(self, kind: Any, limit: Optional[int] = None) -> List[str]:
        """Keys of records a later observation could still move (backfill refresh set)."""
        kind = coerce_kind(kind)
        try:
            async with self._session_factory() as session:
                return await self._store.open_keys(session, kind, limit)
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to list open {kind.value} records: {e}") from e

    async def _reconcile_in_session(
        self, session: AsyncSession, kind: EntityKind, key: str, fields: dict
    ) -> ReconcileOutcome:
        merge = merge_deployment if kind is EntityKind.DEPLOYMENT else self._merge_incident(key)

        record = await self._store.get_for_update(session, kind, key)
        if record is None:
            state = merge(None, fields)
            if await self._store.insert_if_absent(session, kind, key, state):
                logger.info(f"Created {kind.value} {key} ({state.status.value})")
                return ReconcileOutcome.CREATED
            # Lost the insert race: the row now exists, merge into it.
            record = await self._store.get_for_update(session, kind, key)
            if record is None:
                raise StoreError(f"{kind.value} {key} vanished after insert conflict")

        current = self._store.state_of(record)
        merged = merge(current, fields)
        if merged == current:
            return ReconcileOutcome.UNCHANGED

        self._store.apply(record, merged)
        logger.info(f"Updated {kind.value} {key}: {current} -> {merged}")
        return ReconcileOutcome.UPDATED

    @staticmethod
    def _merge_incident(key: str):
        def merge(current, fields):
            return merge_incident(current, fields, external_key=key)
        return merge
