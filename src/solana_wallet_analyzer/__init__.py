"""Solana Wallet Analyzer.

Asynchronous, resumable analysis of a Solana wallet's trading history.
"""

__version__ = "0.1.0"
