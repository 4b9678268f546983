#!/usr/bin/env python3
"""
Entry point for the Event Hub API.

Usage:
    python run.py

Environment Variables:
    FLASK_ENV: development, production or testing (default: development)
    PORT: Port to run on (default: 5000)
    DATABASE_URL: SQLAlchemy database URL
    REDIS_URL: Redis URL for the activity feed and shared locks (optional)
"""
import os

from eventhub.app import create_app


def run_server():
    """Run the event hub API."""
    app = create_app()
    port = int(os.getenv('PORT', 5000))
    debug = os.getenv('FLASK_ENV', 'development') == 'development'

    print(f"Starting Event Hub on port {port}...")
    app.run(host='0.0.0.0', port=port, debug=debug)


if __name__ == '__main__':
    run_server()
