"""Test suite for CellPrograms.

Test organization:
- fixtures/: Synthetic data generators
- unit/: Unit tests for individual modules

Run tests with:
    pytest tests/
    pytest tests/unit/ -v --tb=short
"""
