"""FastAPI authority application."""
