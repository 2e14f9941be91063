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
                "registry is frozen"
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


# Job Registry - background processing handlers
class JobHandler(Protocol):
    """Protocol for job handlers that process claimed jobs."""

    async def handle(self, context: Any) -> dict[str, Any] | None:
        """
        Handle a claimed job.

        Args:
            context: JobContext carrying the job row, progress reporting and
                the cooperative cancellation flag

        Returns:
            Optional result dictionary stored as the job's result_data
        """
        ...


class JobRegistry(Registry[JobHandler]):
    """Registry for job handlers keyed by job type."""

    def __init__(self):
        super().__init__("Job")


# Collaborators for the document pipeline stages
class DocumentParser(Protocol):
    """Protocol for document parsers (pdf, markdown, text)."""

    async def parse(
        self, file_path: str | None, job_type: str, params: dict[str, Any]
    ) -> dict[str, Any]:
        """
        Parse a source document.

        Returns:
        {
            "text": str,
            "pages": Optional[int],
            "metadata": Dict[str, Any]
        }
        """
        ...


class DocumentChunker(Protocol):
    """Protocol for document chunkers."""

    async def chunk(self, doc_id: str, params: dict[str, Any]) -> dict[str, Any]:
        """Split a parsed document into chunks and return a summary."""
        ...


class ChunkEmbedder(Protocol):
    """Protocol for chunk embedders."""

    async def embed(self, doc_id: str, params: dict[str, Any]) -> dict[str, Any]:
        """Compute embeddings for a document's chunks and return a summary."""
        ...

