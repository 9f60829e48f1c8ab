"""Encrypted wallet backup and synchronization over WebDAV."""

__version__ = "0.1.0"
