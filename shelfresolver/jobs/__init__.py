"""Standalone jobs runnable with ``python -m``."""
