"""Services that orchestrate the ingestion, evaluation, and dispatch loops."""
