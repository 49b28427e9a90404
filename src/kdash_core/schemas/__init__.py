"""Pydantic models for Klaviyo payloads and dashboard snapshots."""
