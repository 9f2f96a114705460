"""Amply conversation and notification sync backend."""
