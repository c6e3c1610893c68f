"""Cross-cutting primitives: ids, errors, configuration."""
