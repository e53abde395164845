"""Per-user exclusivity for recommendation generation."""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from uuid import UUID

from transfer_engine.logger import get_logger
from transfer_engine.utils.exceptions import GenerationBusyError

logger = get_logger(__name__)


@dataclass
class _Lease:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Tasks holding or waiting for the lock; the entry is dropped at zero
    refs: int = 0


class UserLeaseTable:
    """One asyncio lock per user id, created on demand.

    Entries are removed as soon as no task holds or waits for them, so the
    table does not grow with the number of users ever seen. Different users
    never contend.
    """

    def __init__(self) -> None:
        self._leases: dict[UUID, _Lease] = {}

    def is_held(self, user_id: UUID) -> bool:
        lease = self._leases.get(user_id)
        return lease is not None and lease.lock.locked()

    def __len__(self) -> int:
        return len(self._leases)

    @asynccontextmanager
    async def lease(
        self,
        user_id: UUID,
        *,
        timeout: float,
        wait: bool = True,
    ) -> AsyncIterator[None]:
        """Hold the user's lease for the duration of the block.

        Raises:
            GenerationBusyError: ``wait`` is False and the lease is held, or
                the lease could not be acquired within ``timeout`` seconds.
        """
        lease = self._leases.setdefault(user_id, _Lease())
        if not wait and lease.lock.locked():
            logger.info("Generation lease busy", user_id=str(user_id))
            self._release_entry(user_id, lease)
            raise GenerationBusyError(user_id)

        lease.refs += 1
        try:
            try:
                await asyncio.wait_for(lease.lock.acquire(), timeout=timeout)
            except TimeoutError:
                logger.warning(
                    "Generation lease wait timed out",
                    user_id=str(user_id),
                    timeout_seconds=timeout,
                )
                raise GenerationBusyError(
                    user_id, f"lease not acquired within {timeout}s"
                ) from None
            try:
                yield
            finally:
                lease.lock.release()
        finally:
            lease.refs -= 1
            self._release_entry(user_id, lease)

    def _release_entry(self, user_id: UUID, lease: _Lease) -> None:
        if lease.refs == 0 and not lease.lock.locked() and self._leases.get(user_id) is lease:
            del self._leases[user_id]


# Shared by every engine in the process; per-call engines must not build their own
user_leases = UserLeaseTable()
