"""
WSGI config for the presence_guard project.

It exposes the WSGI callable as a module-level variable named ``application``.
"""

import os

from django.core.wsgi import get_wsgi_application

# Application servers get the hardened settings unless told otherwise.
os.environ.setdefault("DJANGO_SETTINGS_MODULE", "presence_guard.settings.production")

application = get_wsgi_application()
