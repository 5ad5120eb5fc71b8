"""
Reqflow
SQLAlchemy models.

``db`` is the shared Flask-SQLAlchemy handle; records live in the
sibling modules and are imported by ``create_app`` so ``create_all``
sees every table.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
