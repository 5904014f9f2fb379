"""Client-side components for docsync."""
