"""Fetching, discovery, extraction and batch scheduling for news pages."""
