"""Pydantic schemas for crew monitoring read models, feed events and views."""
