"""Pydantic request/response schemas for the clinicsync API.

JSON bodies use camelCase keys, matching the WebSocket event contract.
"""
