"""AKIRA test suite."""
