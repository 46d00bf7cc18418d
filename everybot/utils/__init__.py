"""Utility functions."""

from everybot.utils.helpers import parse_area, parse_price, random_delay

__all__ = ["parse_area", "parse_price", "random_delay"]
