"""
Backend registry for Arbiter.

Holds every registered search backend, its capability tags and current
health. No quota or budget logic lives here.
"""

from threading import Lock
from typing import Optional

from arbiter.schemas import ArbiterError, Backend, Capability, HealthStatus


class DuplicateBackendError(ArbiterError):
    """Raised when a backend id is registered twice."""
    def __init__(self, backend_id: str):
        self.backend_id = backend_id
        super().__init__(f"Backend '{backend_id}' is already registered")


class UnknownBackendError(ArbiterError, KeyError):
    """Raised when a backend id is not registered."""
    def __init__(self, backend_id: str):
        self.backend_id = backend_id
        super().__init__(f"Backend '{backend_id}' is not registered")

    def __str__(self) -> str:
        return self.args[0]


class BackendRegistry:
    """
    Registry of search backends.

    Iteration order is registration order, so ranking ties resolve the
    same way on every run.
    """

    def __init__(self):
        self._backends: dict[str, Backend] = {}
        self._lock = Lock()

    def register(self, backend: Backend) -> Backend:
        """
        Add a backend.

        Raises:
            DuplicateBackendError: If the id is already registered.
        """
        with self._lock:
            if backend.backend_id in self._backends:
                raise DuplicateBackendError(backend.backend_id)
            self._backends[backend.backend_id] = backend
        return backend

    def get(self, backend_id: str) -> Backend:
        """Look up a backend by id."""
        with self._lock:
            backend = self._backends.get(backend_id)
        if backend is None:
            raise UnknownBackendError(backend_id)
        return backend

    def list(self, tag: Optional[Capability] = None) -> list[Backend]:
        """
        Backends carrying ``tag`` (all backends if None), in registration order.
        """
        with self._lock:
            backends = list(self._backends.values())
        if tag is None:
            return backends
        return [b for b in backends if b.has(tag)]

    def set_health(self, backend_id: str, status: HealthStatus) -> None:
        """Update a backend's health. Setting the same status twice is a no-op."""
        status = HealthStatus(status)
        with self._lock:
            backend = self._backends.get(backend_id)
            if backend is None:
                raise UnknownBackendError(backend_id)
            backend.health = status

    def __contains__(self, backend_id: str) -> bool:
        with self._lock:
            return backend_id in self._backends

    def __len__(self) -> int:
        with self._lock:
            return len(self._backends)
