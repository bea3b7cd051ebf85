"""Persistence: vector store, indexer state, metrics database and repository metadata."""
