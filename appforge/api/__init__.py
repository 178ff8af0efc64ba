"""HTTP API for the sandboxed execution engine."""
