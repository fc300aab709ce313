"""Shared helpers: types, config, logging, filters, rate limiting."""
