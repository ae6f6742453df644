"""
Rate Limiting Domain Repositories

The store interface every other component calls through. The engine itself
holds no cross-request state: all consistency is delegated to the store,
which executes each strategy script as one atomic unit.

Repositories:
- RateLimitStore: Script execution, key namespace management and the
  small set of reads/writes the monitor and hotspot detector need

Design Principles:
- Dependency Inversion: Domain depends on this abstraction, not on redis-py
- Typed failures: Implementations raise StoreUnavailableError, never raw
  client exceptions
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple


class RateLimitStore(ABC):
    """
    Repository interface for the shared key-value store.

    Implementations must translate every client-level failure (connection,
    timeout, script error, malformed reply) into
    :class:`~ratelimiter.core.exceptions.StoreUnavailableError`.
    """

    supports_async: bool = False

    @abstractmethod
    def eval_script(self, name: str, key: str, args: Sequence[Any]) -> List[Any]:
        """
        Execute the named strategy script atomically.

        Args:
            name: Registered script name
            key: The single KEYS[1] value
            args: ARGV values, string-encoded by the implementation

        Returns:
            The script's result array
        """

    @abstractmethod
    async def aeval_script(self, name: str, key: str, args: Sequence[Any]) -> List[Any]:
        """Async counterpart of :meth:`eval_script`."""

    @abstractmethod
    def scan_keys(self, pattern: str) -> List[str]:
        """Return every key matching a glob ``pattern`` without blocking the server."""

    @abstractmethod
    def delete(self, *keys: str) -> int:
        """Delete keys and return how many existed."""

    @abstractmethod
    def ttl(self, key: str) -> int:
        """Seconds to live; -1 without expiry, -2 when missing."""

    @abstractmethod
    def set_values(
        self,
        values: Mapping[str, Any],
        ttl: int,
        only_if_absent: Iterable[str] = (),
    ) -> None:
        """Write several string keys with one expiry, skipping existing ``only_if_absent`` keys."""

    @abstractmethod
    def read_hash(self, key: str) -> Dict[str, str]:
        pass

    @abstractmethod
    def read_sorted_set(self, key: str, start: int = 0, stop: int = -1) -> List[Tuple[str, float]]:
        """Members with scores, highest score first."""

    @abstractmethod
    def read_set(self, key: str) -> Set[str]:
        pass

    @abstractmethod
    def read_list(self, key: str, start: int = 0, stop: int = -1) -> List[str]:
        pass

    @abstractmethod
    def pipeline(self) -> Any:
        """A non-transactional command pipeline for best-effort batched writes."""

    @abstractmethod
    def apipeline(self) -> Any:
        """Async counterpart of :meth:`pipeline`."""

    @abstractmethod
    def execute_pipeline(self, pipe: Any) -> List[Any]:
        """Run a pipeline built from :meth:`pipeline`."""

    @abstractmethod
    async def aexecute_pipeline(self, pipe: Any) -> List[Any]:
        """Run a pipeline built from :meth:`apipeline`."""

    @abstractmethod
    def health_check(self) -> Dict[str, Any]:
        """
        Ping the store.

        Returns:
            ``{"healthy": bool, "latency_ms": float | None, "error": str | None}``
        """

    def close(self) -> None:
        """Release client resources; optional."""
        return None

    async def aclose(self) -> None:
        return None
