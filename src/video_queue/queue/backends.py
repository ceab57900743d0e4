"""Abstract base class for the durable store behind the job queue.

This module defines the primitive operations the queue needs: scalar values
with expiry, sorted collections, sets and counters. The abstraction enables
the local-first SQLite implementation while remaining distributed-ready for a
future Redis backend, whose commands these operations mirror.
"""

from abc import ABC, abstractmethod
from typing import Iterator, List, Optional, Tuple


class DurableStore(ABC):
    """Abstract durable store for queue state.

    Implementations must provide:
    - Atomicity for every single operation
    - Atomic moves between collections (a member is never observable in
      both the source and the destination)
    - Expiry of scalar values (expired values are invisible to reads)
    - StoreUnavailable on infrastructure failure
    """

    # Scalars

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value for key, or None if missing or expired."""
        pass

    @abstractmethod
    def set(self, key: str, value: str, expires_at: Optional[float] = None) -> None:
        """Upsert a value.

        Args:
            key: Scalar key
            value: Serialized value
            expires_at: Absolute expiry as a Unix timestamp (None = never)
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete key. Returns True if it existed."""
        pass

    @abstractmethod
    def scan_keys(self, prefix: str) -> Iterator[str]:
        """Iterate live keys starting with prefix.

        Implementation notes:
        - Can be O(n) - only used for maintenance operations
        """
        pass

    @abstractmethod
    def purge_expired(self) -> int:
        """Physically remove expired scalars. Returns count removed."""
        pass

    # Sorted collections

    @abstractmethod
    def zadd(self, name: str, member: str, score: float, tiebreak: float = 0.0) -> None:
        """Add or update member with (score, tiebreak).

        Implementation notes:
        - Ordering is score descending, then tiebreak ascending
        - Re-adding an existing member updates its order key (no duplicates)
        """
        pass

    @abstractmethod
    def zrem(self, name: str, member: str) -> bool:
        """Remove member. Returns True if it was present."""
        pass

    @abstractmethod
    def zcard(self, name: str) -> int:
        pass

    @abstractmethod
    def zscore(self, name: str, member: str) -> Optional[float]:
        pass

    @abstractmethod
    def zrange(
        self, name: str, start: int = 0, stop: int = -1, desc: bool = False
    ) -> List[Tuple[str, float]]:
        """Members by rank (ascending score unless desc), inclusive stop."""
        pass

    @abstractmethod
    def zrangebyscore(
        self, name: str, max_score: float, limit: Optional[int] = None
    ) -> List[Tuple[str, float]]:
        """Members with score <= max_score, ascending."""
        pass

    @abstractmethod
    def zpopmax(self, name: str, move_to: Optional[str] = None) -> Optional[Tuple[str, float]]:
        """Atomically remove and return the highest-order member.

        Args:
            name: Sorted collection to pop from
            move_to: Optional set that receives the member in the same transaction

        Returns:
            (member, score) or None if the collection is empty

        Implementation notes:
        - MUST be safe with concurrent callers (each member popped once)
        - Order is score DESC, tiebreak ASC
        """
        pass

    @abstractmethod
    def zmove(
        self,
        src: str,
        dst: str,
        member: str,
        score: float,
        tiebreak: float = 0.0,
        require_member: bool = True,
    ) -> bool:
        """Atomically move member from one sorted collection to another.

        Args:
            src: Source sorted collection
            dst: Destination sorted collection
            member: Member to move
            score: Score in destination
            tiebreak: Tiebreak in destination
            require_member: If True, do nothing when member is not in src

        Returns:
            True if the member was added to dst
        """
        pass

    # Sets

    @abstractmethod
    def sadd(self, name: str, member: str) -> bool:
        """Add member. Returns True if newly added."""
        pass

    @abstractmethod
    def srem(self, name: str, member: str) -> bool:
        """Remove member. Returns True if it was present."""
        pass

    @abstractmethod
    def smembers(self, name: str) -> List[str]:
        pass

    @abstractmethod
    def scard(self, name: str) -> int:
        pass

    @abstractmethod
    def sismember(self, name: str, member: str) -> bool:
        pass

    @abstractmethod
    def smove_to_zset(
        self, src: str, dst: str, member: str, score: float, tiebreak: float = 0.0
    ) -> bool:
        """Atomically remove member from set src and add it to sorted collection dst.

        Returns:
            True if member was present in src
        """
        pass

    # Counters

    @abstractmethod
    def incr(self, name: str, amount: int = 1) -> int:
        """Atomically increment a counter and return its new value."""
        pass

    @abstractmethod
    def get_counter(self, name: str) -> int:
        pass

    def close(self) -> None:
        """Release resources held by the store."""
        pass
