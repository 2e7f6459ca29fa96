"""User interface package."""
