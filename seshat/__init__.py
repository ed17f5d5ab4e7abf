"""Seshat: document ingestion and vector retrieval.

This package provides:
- **Ingestion**: page chunking, rate-limited embedding through the Gemini API,
  resumable bulk migration of pre-embedded records, and an end-to-end pipeline.
- **Shared**: the Supabase vector store client (retry, circuit breaker,
  result cache), a standalone semantic cache, error types and logging.

Entry point:
- CLI: ``seshat`` command (see seshat.cli)
"""
