"""Campus gate pass service: enrollment pipeline, fee ledger and daily gate verification."""

__version__ = "1.0.0"
