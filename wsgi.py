"""
WSGI entry point and Flask-Migrate / Alembic target.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
"""

from casebridge import create_app

app = create_app()
