"""
Celery tasks.

- quality_tasks: post-hoc verification of returned answers
"""
