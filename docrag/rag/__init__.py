"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document loading (text, markdown, PDF)
- Chunking with pluggable strategies
- Batched embedding generation
- FAISS vector index and retrieval with degraded fallback
- Answer orchestration over a generation provider
"""
