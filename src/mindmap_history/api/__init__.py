"""HTTP API for document history."""
