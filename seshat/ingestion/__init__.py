"""Ingestion: chunking, embedding, checkpointed migration and the end-to-end pipeline."""
