"""Item archive service: items with revisions and history, bulk archiving,
and a vector index whose metadata mirrors the database."""

__version__ = "0.1.0"
