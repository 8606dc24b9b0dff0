"""Shared primitives: configuration, errors, ids and clocks."""
