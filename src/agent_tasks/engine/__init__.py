"""Agent task execution engine.

A task is a natural-language request executed by a bounded tool-calling
conversation with a language model. The engine persists tasks in SQLite,
claims them with compare-and-swap updates, runs each attempt under a
wall-clock deadline and re-queues transient failures with backoff.
"""
