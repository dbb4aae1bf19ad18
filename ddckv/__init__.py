"""Memory-node server, hash-index layout and block bookkeeping for a disaggregated key-value store."""

__version__ = "0.1.0"