"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi db upgrade
    flask --app wsgi pipetrak seed-templates <project_id>
"""

from pipetrak import create_app

app = create_app()
