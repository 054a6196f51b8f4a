"""Schema normalization, rule classification, permissions and field dependency graph."""
