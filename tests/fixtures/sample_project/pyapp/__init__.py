"""Sample Python package."""
