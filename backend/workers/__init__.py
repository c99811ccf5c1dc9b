"""
Background processing for the sync engine.

This module provides:
- celery_app: The Celery application (Beat schedule + workers)
- orchestrator: Runs claimed sync jobs end to end
- tasks: Celery task wrappers
"""
