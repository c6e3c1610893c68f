"""Domain layer: events, the aggregate base, and the Todo aggregate.

Nothing in this package performs I/O.
"""
