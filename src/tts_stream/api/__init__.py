"""
FastAPI REST API Layer for tts-stream.

This package defines all HTTP endpoints:
    - routes.py: /v1/tts/*, /v1/materials/*, /health, /metrics
    - schemas.py: Request/response Pydantic models
    - dependencies.py: FastAPI dependency injection
"""
