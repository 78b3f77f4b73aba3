"""Durable store interfaces and adapters."""
