"""Execution engine: CLI executor, pipeline runner and snapshot store."""
