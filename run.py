#!/usr/bin/env python3
"""
Entry point for the Game Service.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    DATABASE_URL: SQLAlchemy database URL
    REDIS_URL: Redis URL for events and rate limiting
"""
import os


def run_service():
    """Run the game service."""
    from gameday.app import create_app

    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    app.logger.info("Starting Game Service on port %s...", port)
    app.run(host='0.0.0.0', port=port, debug=debug)


if __name__ == '__main__':
    run_service()
