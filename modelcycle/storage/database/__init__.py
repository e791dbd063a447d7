"""SQLAlchemy models and engine configuration."""
