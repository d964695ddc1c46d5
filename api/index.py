"""
WILSY METERING - Vercel Serverless API

Wraps the FastAPI app for serverless deployment. Set DATABASE_URL to a
PostgreSQL instance; a serverless filesystem does not keep SQLite files.
"""

import os
import sys

from mangum import Mangum

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from wilsy_metering.api.server import app  # noqa: E402

# Vercel handler
handler = Mangum(app, lifespan="auto")
