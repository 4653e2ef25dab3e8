"""Infrastructure adapters: document store, blob store, external services."""
