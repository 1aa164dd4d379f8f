"""
trade-recon - Broker Trade Reconciliation

Turns broker export files and remote execution histories into canonical
round-trip trades with idempotent persistence.
"""

__version__ = "0.1.0"
__author__ = "trade-recon Team"
