"""Operator CLI commands."""
