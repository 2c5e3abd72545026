"""Service layer for the document repository."""
