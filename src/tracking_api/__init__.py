"""Minimal visitor tracking API backed by a JSON file."""
