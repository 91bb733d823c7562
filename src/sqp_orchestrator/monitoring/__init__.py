"""Structured logging and failure notifications."""
