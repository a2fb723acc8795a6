#!/usr/bin/env python3
"""
Local development server for the performance monitor management API.
Start a celery worker with beat alongside it to drive collection:

    celery -A performance_monitor.infrastructure.celery_app.celery_app worker -B
"""

import os

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Set local development environment
os.environ.setdefault('ENVIRONMENT', 'development')
if not os.getenv('DATABASE_URL'):
    print("DATABASE_URL not set, using sqlite:///./performance_monitor.db")

if __name__ == "__main__":
    import uvicorn
    from performance_monitor.config import get_settings

    settings = get_settings()
    print("Starting Performance Monitor API")
    print(f"Docs: http://localhost:{settings.api_port}/docs")
    print(f"Schedule: http://localhost:{settings.api_port}/schedule")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "performance_monitor.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=True,
        log_level=settings.log_level.lower(),
    )
