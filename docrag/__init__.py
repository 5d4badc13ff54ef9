"""Document RAG: retrieval, ranking and grounded answers over a private document library."""

__version__ = "0.1.0"
