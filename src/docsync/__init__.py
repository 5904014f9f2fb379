"""docsync - watch folders and deliver new documents to a remote service."""

__version__ = "0.1.0"
