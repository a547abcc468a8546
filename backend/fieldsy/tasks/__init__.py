"""Celery application and periodic jobs for the Fieldsy booking engine."""
