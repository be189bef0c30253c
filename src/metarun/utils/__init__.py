# ABOUTME: Utilities package initialization for metarun
# ABOUTME: Contains shared utilities for subprocesses, safety, logging and cloud storage

"""
metarun Utilities Package

Shared utilities:
    - shell.py: Subprocess runner with explicit working directories
    - safety.py: Confirmation prompts guarding destructive operations
    - logging.py: Structured logging with correlation IDs and audit trail
    - storage.py: GCS JSON API client with retry logic
"""
