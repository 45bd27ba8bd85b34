"""Commit scanning, progress tracking and restart control."""

from .progress import ProgressStore
from .resume import ResumeController, ResumeState
from .scanner import CommitScanner, RepoTarget, year_window

__all__ = ["CommitScanner", "ProgressStore", "RepoTarget", "ResumeController", "ResumeState", "year_window"]
