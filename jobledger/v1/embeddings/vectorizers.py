"""
Vectorizer implementations for the embedding worker.

Supports two backends: stub (deterministic, offline) and openai (HTTP API).
"""

import hashlib
import math

import httpx

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"


class VectorizerError(RuntimeError):
    """Raised when a backend cannot produce embeddings."""


class StubVectorizer:
    """
    Deterministic hash-based vectorizer for development and testing.

    Generates consistent vectors from text hashes with no network calls.
    """

    def __init__(self, dimension: int = 1536):
        self._dimension = dimension

    def _vectorize_one(self, text: str) -> list[float]:
        normalized_text = text.strip().lower()

        # Each digest byte becomes a float in [-1, 1]; re-hash with a counter
        # until the vector is long enough
        vector: list[float] = []
        block = 0
        while len(vector) < self._dimension:
            digest = hashlib.sha256(f"{block}:{normalized_text}".encode("utf-8")).digest()
            vector.extend((byte / 127.5) - 1.0 for byte in digest)
            block += 1
        vector = vector[: self._dimension]

        # L2 normalize the vector for cosine similarity
        norm = math.sqrt(sum(x * x for x in vector))
        if norm > 0:
            vector = [x / norm for x in vector]
        return vector

    async def vectorize(self, texts: list[str]) -> list[list[float]]:
        return [self._vectorize_one(text) for text in texts]

    def get_dimension(self) -> int:
        return self._dimension

    def get_model_version(self) -> str:
        return "stub-v1.0"


class OpenAIVectorizer:
    """
    OpenAI embeddings vectorizer (text-embedding-3-small by default).

    Talks to the REST API directly; all chunks of a job go out in one request.
    """

    def __init__(
        self,
        api_key: str | None,
        model_name: str = "text-embedding-3-small",
        timeout_s: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._api_key = api_key
        self._model_name = model_name
        self._timeout_s = timeout_s
        self._http_client = http_client

    async def vectorize(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings using the OpenAI API."""
        if not self._api_key:
            raise VectorizerError(
                "OPENAI_API_KEY is required for the openai vectorizer"
            )
        if not texts:
            return []

        body = {"model": self._model_name, "input": texts, "encoding_format": "float"}
        headers = {"Authorization": f"Bearer {self._api_key}"}

        try:
            if self._http_client is not None:
                response = await self._http_client.post(
                    OPENAI_EMBEDDINGS_URL, json=body, headers=headers
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout_s) as client:
                    response = await client.post(
                        OPENAI_EMBEDDINGS_URL, json=body, headers=headers
                    )
            response.raise_for_status()
            data = response.json()["data"]
        except (httpx.HTTPError, ValueError, KeyError) as e:
            raise VectorizerError(f"OpenAI API error: {e}") from e

        # The API may return items out of order; index says where each belongs
        ordered = sorted(data, key=lambda item: item["index"])
        return [item["embedding"] for item in ordered]

    def get_dimension(self) -> int:
        """Return vector dimension (1536 for text-embedding-3-small)."""
        return 1536

    def get_model_version(self) -> str:
        return self._model_name
