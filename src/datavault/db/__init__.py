"""Metadata store: ORM models and async engine helpers."""
