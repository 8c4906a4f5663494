"""Typed dataflow statements: type system, evaluator, incremental updater and printer."""
