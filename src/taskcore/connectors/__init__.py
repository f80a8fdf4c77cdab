"""Console REPL and notification channels."""
