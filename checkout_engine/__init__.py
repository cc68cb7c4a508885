"""Storefront checkout orchestration and pricing engine."""

__version__ = "0.1.0"
