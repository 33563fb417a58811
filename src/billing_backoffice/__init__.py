"""Billing back-office: invoice lifecycle and reliable side-effect dispatch."""

__version__ = "0.1.0"
