"""Continuity assessment, context assembly and narrative-state tracking."""
