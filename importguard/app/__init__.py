"""FastAPI application for the import guard service."""
