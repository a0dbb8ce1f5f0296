"""
PixiShelf backend: library ingestion and HTTP API.
"""
