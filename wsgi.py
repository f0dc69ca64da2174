"""
WSGI entry point.

Usage:
    flask --app wsgi run
    flask --app wsgi seed-roles
    gunicorn wsgi:app
"""

from app import create_app

app = create_app()
