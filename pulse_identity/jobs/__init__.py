"""
Background Jobs for Pulse Identity.

This module contains scheduled and background jobs:
- directory_sync_cron: Periodic directory sync and delayed task processing
"""

from .directory_sync_cron import run_directory_sync_job

__all__ = ["run_directory_sync_job"]
