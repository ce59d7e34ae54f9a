"""Process-wide plumbing: logging and tracing."""
