"""Computed-field propagation engine: dependency graph, plan compiler, executor and outbox."""
