"""Pydantic models for ShiftDeck requests, deployments and collaborators."""
