"""Outreach - time-delayed, multi-step campaign scheduler."""

__version__ = "0.3.0"
