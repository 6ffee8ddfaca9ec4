import httpx

from app.logging_config import get_logger

logger = get_logger("embedding_service")


class EmbeddingError(Exception):
    pass


class OllamaEmbeddingClient:
    """Embeddings from a local Ollama server."""

    def __init__(self, base_url: str, model: str, timeout_seconds: float = 15.0):
        self.base_url = (base_url or "").rstrip("/")
        self.model = model
        self.timeout_seconds = timeout_seconds

    def embed(self, text: str) -> list[float]:
        if not self.base_url:
            raise EmbeddingError("OLLAMA_URL is not configured")
        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.base_url}/api/embeddings",
                    json={"model": self.model, "prompt": text},
                )
        except httpx.HTTPError as e:
            raise EmbeddingError(f"ollama request failed: {e}") from e

        if response.status_code != 200:
            raise EmbeddingError(f"ollama status {response.status_code}: {response.text[:1024].strip()}")

        embedding = (response.json() or {}).get("embedding") or []
        if not embedding:
            raise EmbeddingError("empty embedding")
        return [float(value) for value in embedding]


def vector_literal(vector: list[float]) -> str:
    """pgvector text form: [0.1,0.2,...]"""
    return "[" + ",".join(repr(float(value)) for value in vector) + "]"
