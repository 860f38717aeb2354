"""Utilities module - datetime helpers and display formatting."""
from crewwatch.utils.datetime_helpers import ensure_utc, parse_timestamp

__all__ = ["ensure_utc", "parse_timestamp"]
