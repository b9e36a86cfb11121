"""SQLAlchemy adapters implementing the core repository protocols."""
