"""Two-stage batch pipeline: analyze, structure, ingest."""
