"""
Programme Governance Engine
SQLAlchemy model registry.

All model modules import ``db`` from here:

    from app.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
