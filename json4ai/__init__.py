"""JSON4AI subscription and credit reconciliation core."""

__version__ = "1.0.0"
