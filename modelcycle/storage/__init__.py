"""Durable storage for the model lifecycle."""
