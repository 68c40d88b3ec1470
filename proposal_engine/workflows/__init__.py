"""Workflows — pure state transitions."""
