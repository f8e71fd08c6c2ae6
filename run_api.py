#!/usr/bin/env python3
"""
Startup script for the PayProof FastAPI server.

Usage:
    python run_api.py

Or with uvicorn directly:
    uvicorn payproof.api.main:app --reload --host 0.0.0.0 --port 3000
"""

import os

import uvicorn

if __name__ == "__main__":
    uvicorn.run(
        "payproof.api.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
        reload=os.getenv("PAYPROOF_RELOAD", "0") == "1",
        log_level="info",
    )
