"""Pydantic schemas for the local API."""
