"""Persisted domain models."""
