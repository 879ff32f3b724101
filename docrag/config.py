"""Application configuration with sensible defaults."""
import os
from pathlib import Path

# Paths
BASE_DIR = Path(__file__).parent.parent
DATA_DIR = Path(os.getenv("DOCRAG_DATA_DIR", str(BASE_DIR / "data")))
DOCS_DIR = Path(os.getenv("DOCRAG_DOCS_DIR", str(BASE_DIR / "docs")))
DB_PATH = Path(os.getenv("DOCRAG_DB_PATH", str(DATA_DIR / "docrag.sqlite")))
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "4"))
DB_POOL_TIMEOUT = float(os.getenv("DB_POOL_TIMEOUT", "5.0"))

# Providers ("ollama" or "openai")
LLM_PROVIDER = os.getenv("LLM_PROVIDER", "ollama")
OLLAMA_BASE_URL = os.getenv("OLLAMA_BASE_URL", "http://localhost:11434")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
CHAT_MODEL = os.getenv("CHAT_MODEL", "gemma3:12b")
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "mxbai-embed-large:latest")
PROVIDER_TIMEOUT = float(os.getenv("PROVIDER_TIMEOUT", "60.0"))

# Chunking (character-based)
CHUNK_STRATEGY = os.getenv("CHUNK_STRATEGY", "paragraph")
CHUNK_SIZE = int(os.getenv("CHUNK_SIZE", "1000"))
CHUNK_OVERLAP = int(os.getenv("CHUNK_OVERLAP", "200"))

# Interactive chunking endpoint defaults
API_CHUNK_SIZE = int(os.getenv("API_CHUNK_SIZE", "200"))
API_CHUNK_OVERLAP = int(os.getenv("API_CHUNK_OVERLAP", "50"))

# Embeddings
EMBEDDING_BATCH_SIZE = int(os.getenv("EMBEDDING_BATCH_SIZE", "10"))

# Retrieval
RETRIEVAL_TOP_K = int(os.getenv("RETRIEVAL_TOP_K", "5"))
VECTOR_NUM_CANDIDATES = int(os.getenv("VECTOR_NUM_CANDIDATES", "100"))
VECTOR_INDEX_NAME = os.getenv("VECTOR_INDEX_NAME", "chunk_vector_index")
VECTOR_INDEX_TYPE = os.getenv("VECTOR_INDEX_TYPE", "flat")  # flat | hnsw
VECTOR_SEARCH_TIMEOUT = float(os.getenv("VECTOR_SEARCH_TIMEOUT", "5.0"))

# Generation
MAX_CONTEXT_CHARS = int(os.getenv("MAX_CONTEXT_CHARS", "6000"))
GENERATION_TEMPERATURE = float(os.getenv("GENERATION_TEMPERATURE", "0.5"))
GENERATION_MAX_TOKENS = int(os.getenv("GENERATION_MAX_TOKENS", "500"))

# Request limits
MAX_QUERY_LENGTH = int(os.getenv("MAX_QUERY_LENGTH", "2000"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(20 * 1024 * 1024)))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
