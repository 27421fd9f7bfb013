"""Callable CI/CD pipeline templates and their invocation contract."""

__version__ = "0.4.0"
