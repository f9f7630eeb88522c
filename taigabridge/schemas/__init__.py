"""Pydantic schemas for stored links, Taiga and Telegram payloads."""
