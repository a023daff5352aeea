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


# Processor Registry - the functions that perform job work
class JobProcessor(Protocol):
    """Protocol for processors that perform the work of one job type."""

    async def handle(self, payload: dict[str, Any]) -> dict[str, Any] | None:
        """
        Perform the work described by an opaque job payload.

        Args:
            payload: Job payload exactly as supplied by the caller

        Returns:
            Optional result document stored on the completed job record.
            Raising any exception reports the attempt as failed.
        """
        ...


class ProcessorRegistry(Registry[JobProcessor]):
    """Registry mapping job types to the processor that runs them."""

    def __init__(self):
        super().__init__("Processor")

    async def invoke(self, job_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Run the processor registered for ``job_type``.

        A missing processor raises ``KeyError``, which the worker pool treats
        like any other processing failure.
        """
        result = await self.get(job_type).handle(payload)
        return result if result is not None else {}
