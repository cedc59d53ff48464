"""
WSGI / Flask-Migrate entry point.

Usage:
    flask --app wsgi db upgrade
    flask --app wsgi seed-approval-rules
    gunicorn wsgi:app
"""

from privileges import create_app

app = create_app()
