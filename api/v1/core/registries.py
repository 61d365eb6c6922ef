from typing import Any, Generic, Protocol, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def has(self, name: str) -> bool:
        return name in self._implementations

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Job Registry - side-effect executors for claimed jobs
class JobHandler(Protocol):
    """Protocol for job handlers that execute a claimed job's side effect."""

    async def handle(
        self,
        session: Any,  # AsyncSession
        principal_ctx: Any,  # Principal scoped to the job's org
        payload: dict[str, Any],
    ) -> dict[str, Any] | None:
        """
        Execute a job.

        Args:
            session: Database session for handlers that need one
            principal_ctx: Principal context with the job's org_id
            payload: Job-specific parameters

        Returns:
            Optional result dictionary stored with the completed job

        Raises:
            PermanentJobError: the job can never succeed; skip remaining retries
            Exception: any other error is retried until max_attempts
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for background job handlers."""

    def __init__(self):
        super().__init__("Job")


# Global registry instance (singleton)
job_registry = JobRegistry()
