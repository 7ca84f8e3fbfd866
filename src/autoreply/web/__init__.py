"""Web API for the auto-reply service.

Provides FastAPI application with:
- Manual and cron-triggered runs
- Log ledger query and clear endpoints
- Health endpoint for monitoring
- In-process APScheduler job for scheduled runs
"""

from autoreply.web.app import create_app

__all__ = ["create_app"]
