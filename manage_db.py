#!/usr/bin/env python3
"""
Database management script for deployment.
Run this during the build/deployment pipeline to create the schema.
"""
import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from gameday.app import create_app
from gameday.models import db

logger = logging.getLogger(__name__)


def deploy():
    """Run deployment tasks."""
    app = create_app()
    logger.info("Creating database tables...")
    with app.app_context():
        try:
            db.create_all()
            logger.info("Database schema is up to date.")
        except SQLAlchemyError:
            logger.exception("Error creating database schema")
            sys.exit(1)


if __name__ == '__main__':
    deploy()
