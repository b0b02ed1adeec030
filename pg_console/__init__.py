"""Backend for the PostgreSQL administration console."""
