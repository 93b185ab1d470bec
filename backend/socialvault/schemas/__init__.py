"""Pydantic schemas for stored job and backup payloads."""
