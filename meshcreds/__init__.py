"""Workload credentials: metadata server client and emulator, GCP token exchange, REST and Web Push."""

__version__ = "0.1.0"

__all__ = ["gcp", "iam", "mds", "mdsd", "rest", "retry", "webpush"]