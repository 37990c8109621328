"""Pydantic request/response models for the v1 API."""
