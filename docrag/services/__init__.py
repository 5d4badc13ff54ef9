"""
Business logic services.

- providers: embedding and language-model backends
- storage: document stores and metadata filters
- rag: the retrieval, ranking and answer pipeline
"""
