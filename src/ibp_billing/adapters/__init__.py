"""Concrete implementations of the core interfaces."""
