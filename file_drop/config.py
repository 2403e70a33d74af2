"""Configuration settings for the file drop server."""
import os
from pathlib import Path

# Upload limits
MAX_FILE_SIZE = 500 * 1024 * 1024  # 500MB
CHUNK_SIZE = 8192  # 8KB

# Retention
FILE_EXPIRY_SECONDS = 2 * 60 * 60  # 2 hours
CLEANUP_INTERVAL_SECONDS = 10 * 60  # 10 minutes

# An upload is abandoned after 30 minutes without receiving any data
UPLOAD_TIMEOUT_SECONDS = 30 * 60

# Server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Directory paths
UPLOAD_DIR = os.getenv("UPLOAD_DIR", "./uploads")
TEMP_DIR = os.getenv("TEMP_DIR", "./temp")
STATIC_DIR = os.getenv("STATIC_DIR", str(Path(__file__).resolve().parent / "static"))
LOG_DIR = os.getenv("LOG_DIR", "./logs")
