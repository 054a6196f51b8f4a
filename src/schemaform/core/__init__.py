"""Synchronous core: expression IR, evaluator, rule classification, permissions."""
