"""Segmented, checksummed append-only data log storage: segment files, index files and their readers and writers."""

__version__ = "0.1.0"