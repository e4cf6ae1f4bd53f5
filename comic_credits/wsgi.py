"""WSGI entrypoint for the comic credits service."""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "comic_credits.settings")

application = get_wsgi_application()
