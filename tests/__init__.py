"""
Test package marker so helpers are importable as `tests.fakes`.
"""
