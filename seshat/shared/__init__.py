"""Components shared by the ingestion and retrieval paths."""
