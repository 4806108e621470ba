"""Configuration: pydantic settings loaded from YAML and environment."""
