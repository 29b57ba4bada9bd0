"""Celery application for offer rechecks, matching retries and the janitor."""

import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "ridecore.settings")

app = Celery("ridecore")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
