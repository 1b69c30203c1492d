"""Foundational pieces the rest of the pivot package depends on.

- config.py: engine configuration (thresholds, storage paths, LLM endpoint)
- errors.py: structured error taxonomy with searchable codes
"""
