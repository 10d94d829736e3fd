"""Pydantic schemas: pipeline events, transcripts, search and API payloads."""
