"""Normalized domain types shared by every layer of the engine."""
