"""Core services for the ChapterForge chapter pipeline.

Submodules are imported explicitly by call sites (for example
`from core.concurrency import ConcurrencyLimiter`) so importing `core` stays
free of provider and database side effects.
"""
