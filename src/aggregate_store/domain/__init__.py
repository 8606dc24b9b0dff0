"""Domain layer: event, notification and memento primitives, aggregates.

This package defines the primitives every other layer depends on but never
modifies.  Events and mementos are immutable.
"""
