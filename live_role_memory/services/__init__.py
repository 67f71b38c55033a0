from .embeddings import OllamaEmbeddingClient
from .gemini_client import GeminiClient
from .ollama_chat_client import OllamaChatClient

__all__ = ["GeminiClient", "OllamaChatClient", "OllamaEmbeddingClient"]
