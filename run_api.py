#!/usr/bin/env python3
"""
Development runner for the slotbridge API.
For local development only.
"""

import os
from pathlib import Path

from dotenv import load_dotenv
import uvicorn

root = Path(__file__).parent
env_file = root / ".env"
if env_file.exists():
    load_dotenv(env_file)
    print(f"Loaded config from {env_file}")

os.environ.setdefault("SLOTBRIDGE_ENVIRONMENT", "development")
os.environ.setdefault("SLOTBRIDGE_LOG_LEVEL", "DEBUG")

if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    print("Starting slotbridge API...")
    print(f"Listening on http://localhost:{port}")
    print(f"Scheduling provider: {os.getenv('SLOTBRIDGE_SIMPLYBOOK_URL', 'https://user-api.simplybook.me')}")
    uvicorn.run(
        "slotbridge.app:create_app",
        factory=True,
        host="0.0.0.0",
        port=port,
        reload=True,
    )
