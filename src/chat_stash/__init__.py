"""Reconcile conversation batches captured on many machines into one store."""

__version__ = "0.1.0"
