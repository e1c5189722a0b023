"""Visitor event ingestion and profiling service."""
