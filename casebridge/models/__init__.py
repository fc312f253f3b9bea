"""
CaseBridge — Learner Transfer Service
Database models package.

All models share the single Flask-SQLAlchemy ``db`` instance defined here.
Model modules are imported by the app factory so that ``db.create_all()``
and Alembic autogenerate see every table.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
