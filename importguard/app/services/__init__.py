"""Service layer for the import guard."""
