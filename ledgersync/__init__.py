"""ledgersync: local-first ledger records with pluggable remote sync."""

__version__ = "0.1.0"
