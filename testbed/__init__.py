"""Isolated script test runs in Docker containers."""
