"""Core layer: repository protocols and the persistence gateway service."""
