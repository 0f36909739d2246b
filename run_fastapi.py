"""
Entry point for running the API server.

Usage:
    uvicorn run_fastapi:app --host 127.0.0.1 --port 8000
    python run_fastapi.py
"""

import sys
from pathlib import Path

# Make expense_app importable when started from a checkout
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from expense_app.config import get_settings
from expense_app.main import app

__all__ = ['app']


if __name__ == '__main__':
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.HOST, port=settings.PORT)
