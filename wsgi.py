"""
WSGI / Flask CLI entry point.

Usage:
    flask --app wsgi approvals-orchestrate
    flask --app wsgi cab-refresh-agenda 1
    flask --app wsgi seed-governance-defaults
"""

from change_governance import create_app

app = create_app()
