"""
Celery worker application.
"""
