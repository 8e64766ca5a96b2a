"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document and markdown loading
- Document chunking with overlap
- LLM cleaning and metadata extraction
- Embedding generation
- FAISS vector storage with metadata filters
- Query planning and answer synthesis
"""
