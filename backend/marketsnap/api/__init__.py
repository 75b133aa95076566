"""Local API package."""
