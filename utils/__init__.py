"""Shared helpers: Gemini analysis, ward reference data, images, logging and security."""
