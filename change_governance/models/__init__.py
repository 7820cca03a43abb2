"""
Change Governance Core
SQLAlchemy extension instance shared by every model module.

Usage:
    from change_governance.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
