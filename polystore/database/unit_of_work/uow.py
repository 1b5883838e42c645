# ==============================================================================
# UNIT OF WORK - Transaction Coordination
# ==============================================================================
# Manages one native transaction around a caller callback
# Commit on success, rollback on failure, always release
# ==============================================================================

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Type, TypeVar

from polystore.core.exceptions import TransactionError, TransactionRollbackError

logger = logging.getLogger(__name__)

R = TypeVar("R")

AsyncAction = Callable[[], Awaitable[Any]]


class UnitOfWork:
    """
    Unit of Work around one native transaction.

    Adapters open the native transaction and hand over its controls;
    the unit of work owns the commit/rollback/release protocol so it
    is identical on every backend.

    Behavior:
        - Successful exit commits; a failed commit raises TransactionError
        - An exception rolls back, then raises TransactionError with the
          original chained as ``__cause__``
        - A failed rollback raises TransactionRollbackError carrying both
        - Cancellation and other BaseExceptions roll back and propagate
        - ``release`` always runs; a failed release is logged, never raised

    Attributes:
        backend: Backend name used in messages
        handle: Transaction-bound adapter view given to the caller

    Example:
        >>> uow = UnitOfWork("sqlite", handle, trans.commit, trans.rollback, conn.close)
        >>> await uow.run(lambda tx: tx.create("users", {"name": "ada"}))
    """

    def __init__(
        self,
        backend: str,
        handle: Any,
        commit: AsyncAction,
        rollback: AsyncAction,
        release: Optional[AsyncAction] = None,
    ) -> None:
        self.backend = backend
        self.handle = handle
        self._commit = commit
        self._rollback = rollback
        self._release = release
        self._is_active = False

    @property
    def is_active(self) -> bool:
        return self._is_active

    async def __aenter__(self) -> Any:
        self._is_active = True
        return self.handle

    async def __aexit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> None:
        try:
            if exc_val is None:
                await self.commit()
            elif isinstance(exc_val, Exception):
                await self._fail(exc_val)
            else:
                await self._rollback_quietly(exc_val)
        finally:
            self._is_active = False
            await self._release_quietly()

    async def run(self, callback: Callable[[Any], Awaitable[R]]) -> R:
        """Run ``callback(handle)`` inside the transaction."""
        async with self as handle:
            return await callback(handle)

    # ==========================================================================
    # TRANSACTION CONTROL
    # ==========================================================================

    async def commit(self) -> None:
        """
        Commit the transaction.

        Raises:
            TransactionError: If the commit fails
        """
        try:
            await self._commit()
        except Exception as e:
            logger.error(f"[{self.backend}] commit failed: {e}")
            await self._fail(e)

    async def _fail(self, error: Exception) -> None:
        try:
            await self._rollback()
        except Exception as rollback_error:
            logger.error(
                f"[{self.backend}] rollback failed after '{error}': {rollback_error}"
            )
            raise TransactionRollbackError(error, rollback_error) from error

        logger.info(f"[{self.backend}] transaction rolled back: {error}")
        if isinstance(error, TransactionError):
            raise error
        raise TransactionError(
            f"Transaction on {self.backend} rolled back: {error}",
            details={"backend": self.backend, "error": repr(error)},
        ) from error

    async def _release_quietly(self) -> None:
        # The transaction outcome is already settled
        if self._release is None:
            return
        try:
            await self._release()
        except Exception as e:
            logger.error(f"[{self.backend}] release failed: {e}")

    async def _rollback_quietly(self, reason: BaseException) -> None:
        # The interrupting BaseException keeps propagating
        try:
            await self._rollback()
        except Exception as rollback_error:
            logger.error(
                f"[{self.backend}] rollback after {type(reason).__name__} "
                f"failed: {rollback_error}"
            )
