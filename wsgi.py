"""
WSGI / Flask-Migrate entry point.

Usage:
    gunicorn wsgi:app
    flask --app wsgi sweep-approvals
    flask --app wsgi db migrate -m "description"
"""

from approval_routing import create_app

app = create_app()
