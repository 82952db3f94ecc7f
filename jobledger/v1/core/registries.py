from typing import Generic, Protocol, TypeVar

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

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


# Vectorizer Registry - compute embeddings for chunks
class Vectorizer(Protocol):
    """Protocol for embedding vectorizers."""

    async def vectorize(self, texts: list[str]) -> list[list[float]]:
        """Compute one embedding vector per input text."""
        ...

    def get_dimension(self) -> int:
        """Get the dimension of vectors produced."""
        ...

    def get_model_version(self) -> str:
        """Get the model version identifier."""
        ...


class VectorizerRegistry(Registry[Vectorizer]):
    """Registry for vectorizers (stub, openai)."""

    def __init__(self):
        super().__init__("Vectorizer")


# Global registry instance (singleton)
vectorizer_registry = VectorizerRegistry()
