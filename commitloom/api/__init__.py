"""
REST API module for CommitLoom.

Provides FastAPI endpoints for:
- Starting and listing annual analysis runs
- Run status and control (pause, resume, cancel, retry, delete)
- The AI review confirmation gate
- Per-user interim and yearly reports
"""
