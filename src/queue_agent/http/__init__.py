"""HTTP client for the job queue backend."""
