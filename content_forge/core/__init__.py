"""
Core modules for Content Forge.

This package contains budget enforcement, progress reporting, pricing
and the job orchestrators that drive content generation.
"""
