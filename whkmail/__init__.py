"""Mail engine: SQLite message cache, HTTP daemon API with async client, SMTP submission with XOAUTH2, and helpers for a terminal reader."""

__version__ = "0.1.0"