"""Short-lived exclusive claims on resource IDs."""

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Optional

from stackweave.utils.errors import ErrorContext, LeaseConflictError
from stackweave.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class Lease:
    """Exclusive claim on one resource ID."""
    resource_id: str
    owner: str
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class LeaseManager:
    """Grants leases so no two operations touch the same resource at once.

    A live lease blocks every other acquisition of the same resource ID,
    including by the same owner; an expired lease may be taken over.
    """

    def __init__(self, default_ttl: float = 900.0, clock: Optional[Callable[[], float]] = None):
        """
        Args:
            default_ttl: Lease lifetime in seconds
            clock: Monotonic clock, replaceable in tests
        """
        self.default_ttl = default_ttl
        self.clock = clock or time.monotonic
        self._leases: Dict[str, Lease] = {}
        self._lock = threading.Lock()

    def acquire(self, resource_id: str, owner: str, ttl: Optional[float] = None) -> Lease:
        """Acquire a lease.

        Raises:
            LeaseConflictError: If a live lease is held on the resource
        """
        now = self.clock()
        with self._lock:
            current = self._leases.get(resource_id)
            if current is not None and not current.is_expired(now):
                raise LeaseConflictError(
                    f"Resource '{resource_id}' is leased by '{current.owner}'",
                    context=ErrorContext(resource_id=resource_id)
                )
            if current is not None:
                logger.warning(f"Taking over expired lease on {resource_id} from {current.owner}")

            lease = Lease(
                resource_id=resource_id,
                owner=owner,
                token=uuid.uuid4().hex,
                expires_at=now + (ttl if ttl is not None else self.default_ttl),
            )
            self._leases[resource_id] = lease
            return lease

    def release(self, lease: Lease) -> None:
        """Release a lease. Releasing a lease that was taken over is a no-op."""
        with self._lock:
            current = self._leases.get(lease.resource_id)
            if current is not None and current.token == lease.token:
                del self._leases[lease.resource_id]

    def holder(self, resource_id: str) -> Optional[str]:
        """Get the owner of the live lease on a resource, if any."""
        with self._lock:
            current = self._leases.get(resource_id)
            if current is None or current.is_expired(self.clock()):
                return None
            return current.owner

    @contextmanager
    def hold(self, resource_id: str, owner: str, ttl: Optional[float] = None) -> Iterator[Lease]:
        """Hold a lease for the duration of a block."""
        lease = self.acquire(resource_id, owner, ttl)
        try:
            yield lease
        finally:
            self.release(lease)
