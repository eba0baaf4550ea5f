import os

from celery import Celery

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "parkeo.settings.dev")
app = Celery("parkeo")
app.config_from_object("django.conf:settings", namespace="CELERY")
app.autodiscover_tasks()
