"""Cadence: sprint analytics and git activity attribution."""
