"""Outbound supplier quote calls: turn bridge, lifecycle webhooks and price extraction."""
