"""Core domain package for matrix-archive.

Core contains history walking, event normalization and bridge identity
correlation without any mautrix or storage-specific code, keeping the
business logic portable.
"""
