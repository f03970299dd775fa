"""
Optimistic Locking Infrastructure
Status-guarded, version-based updates so check-then-write transitions stay atomic
"""

import logging
from typing import Any, Dict, Iterable, Optional, Type

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from services.settlement_errors import InvalidStateError
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class OptimisticLockingError(InvalidStateError):
    """Raised when a guarded update matched no row (status or version changed underneath)"""
    pass


class OptimisticLockManager:
    """
    Manager for optimistic locking operations.

    The guard is the expected prior status and, when supplied, the expected version.
    Both live in the UPDATE's WHERE clause, so two racing callers cannot both win.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def guarded_update(
        self,
        model_class: Type,
        entity_id: Any,
        updates: Dict[str, Any],
        expected_statuses: Iterable[str],
        current_version: Optional[int] = None,
    ) -> bool:
        """
        Perform a status-guarded, version-incrementing update.

        Args:
            model_class: SQLAlchemy model with id, status and version columns
            entity_id: Primary key value
            updates: Column values to set
            expected_statuses: Statuses the row must currently be in
            current_version: Expected current version (skipped if None)

        Returns:
            bool: True if update successful

        Raises:
            OptimisticLockingError: If no row matched the guard
        """
        expected_statuses = list(expected_statuses)
        conditions = [
            model_class.id == entity_id,
            model_class.status.in_(expected_statuses),
        ]
        if current_version is not None:
            conditions.append(model_class.version == current_version)

        update_values = {
            **updates,
            "version": model_class.version + 1,
            "updated_at": get_naive_utc_now(),
        }

        try:
            stmt = (
                update(model_class)
                .where(*conditions)
                .values(update_values)
                .execution_options(synchronize_session=False)
            )
            result = await self.session.execute(stmt)
        except SQLAlchemyError as e:
            logger.error(f"❌ Database error during guarded update: {e}")
            raise

        if result.rowcount == 0:
            logger.warning(
                f"🔒 Optimistic lock conflict: {model_class.__name__} id={entity_id} "
                f"expected_status={expected_statuses} expected_version={current_version}"
            )
            raise OptimisticLockingError(
                f"{model_class.__name__} id={entity_id} was modified by another process "
                f"(expected status {expected_statuses})"
            )

        logger.debug(
            f"✅ Guarded update successful: {model_class.__name__} id={entity_id} "
            f"-> {updates.get('status', '(status unchanged)')}"
        )
        return True
