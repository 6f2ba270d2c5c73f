"""Automation rule evaluation and notification dispatch."""
