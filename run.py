#!/usr/bin/env python3
"""
Simple run script for DurableFlow.

Usage:
    python run.py

Or with custom settings:
    HOST=127.0.0.1 PORT=8080 CHECKPOINT_BACKEND=file python run.py
"""

import uvicorn
import os


def main():
    """Run the FastAPI application."""
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    reload = os.getenv("RELOAD", "true").lower() == "true"
    backend = os.getenv("CHECKPOINT_BACKEND", "memory")

    print(f"""
+---------------------------------------------------------------+
|                         DurableFlow                           |
|                                                               |
|  Durable, resumable workflow execution                        |
+---------------------------------------------------------------+
   Server:       http://{host}:{port}
   API Docs:     http://{host}:{port}/docs
   Checkpoints:  {backend}
    """)

    uvicorn.run(
        "durableflow.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
