"""Core module for docsync - shared types used by the client components."""
