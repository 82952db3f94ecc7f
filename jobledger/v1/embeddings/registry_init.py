"""
Initialize the vectorizer registry.

Registers every available vectorizer implementation based on settings.
"""

from jobledger.config.settings import Settings, VectorizerType
from jobledger.v1.core.registries import Vectorizer, vectorizer_registry
from jobledger.v1.embeddings.vectorizers import OpenAIVectorizer, StubVectorizer


def init_vectorizer_registry(settings: Settings) -> None:
    """Initialize vectorizer registry with available implementations."""

    if settings.vectorizer == VectorizerType.OPENAI and not settings.openai_api_key:
        raise RuntimeError("OPENAI_API_KEY must be set when VECTORIZER=openai")

    # Always register stub vectorizer (no dependencies)
    vectorizer_registry.register(VectorizerType.STUB.value, StubVectorizer())

    vectorizer_registry.register(
        VectorizerType.OPENAI.value,
        OpenAIVectorizer(
            api_key=settings.openai_api_key,
            model_name=settings.embedding_model,
            timeout_s=settings.worker_timeout_s,
        ),
    )


def get_vectorizer(settings: Settings) -> Vectorizer:
    """Resolve the configured vectorizer, registering backends on first use."""
    if settings.vectorizer.value not in vectorizer_registry.list():
        init_vectorizer_registry(settings)
    try:
        return vectorizer_registry.get(settings.vectorizer.value)
    except KeyError as e:
        available = vectorizer_registry.list()
        raise RuntimeError(
            f"Configured vectorizer '{settings.vectorizer.value}' not available. "
            f"Available vectorizers: {available}"
        ) from e
