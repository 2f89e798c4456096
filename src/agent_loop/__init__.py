"""Run an external AI coding agent in a bounded, observable loop."""

__version__ = "0.1.0"
