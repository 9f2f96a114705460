"""Core utilities for the Amply sync backend."""
