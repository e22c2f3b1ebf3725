"""Shared helpers: configuration, logging and AWS session setup."""
