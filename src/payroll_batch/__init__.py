"""Payroll batch computation and lifecycle engine."""

__version__ = "1.0.0"
