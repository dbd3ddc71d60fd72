"""Project-specific framework utilities.

This package holds the pieces that turn configuration into a running pipeline
(config parsing, concrete executors, status reporting) but none of the
orchestration rules themselves.

For the reusable, project-agnostic orchestration kernel, use `relaykit`.
"""
