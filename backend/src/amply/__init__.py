"""Amply realtime fan-out package."""
