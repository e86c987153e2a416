"""Shared helpers for flume tests."""
