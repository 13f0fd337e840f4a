"""Configuration defaults, overridable through environment variables."""

import os
from pathlib import Path
from typing import Literal


LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL", "OFF"]

# Batch orchestration
BATCH_SIZE = int(os.getenv("STOCK_TAGGER_BATCH_SIZE", "5"))
PACING_DELAY_SECONDS = float(os.getenv("STOCK_TAGGER_PACING_DELAY", "1.0"))
MAX_UPLOAD_FILES = 100

# Provider requests
REQUEST_TIMEOUT_SECONDS = float(os.getenv("STOCK_TAGGER_TIMEOUT", "60"))
DEFAULT_TEMPERATURE = float(os.getenv("TEMPERATURE", "0.7"))
DEFAULT_MAX_TOKENS = int(os.getenv("MAX_TOKENS", "1000"))
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
ANTHROPIC_BASE_URL = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com/v1")
ANTHROPIC_VERSION = "2023-06-01"
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
LOCAL_VISION_BASE_URL = os.getenv("LOCAL_VISION_BASE_URL", "http://localhost:1234/v1")
LOCAL_VISION_MODEL = os.getenv("LOCAL_VISION_MODEL", "qwen/qwen3-vl-30b")

# Credential persistence
CREDENTIALS_STORAGE_KEY = "stock_tagger_credentials"
DEFAULT_CREDENTIALS_FILE = Path(
    os.getenv(
        "STOCK_TAGGER_CREDENTIALS_FILE",
        str(Path.home() / ".stock_tagger" / "credentials.json"),
    ),
)

# Metadata constraints
MAX_TITLE_LENGTH = 70
MAX_KEYWORDS = 50

DEFAULT_PROMPT = (
    "This is a stock photo. Generate an SEO-friendly title (max 70 characters), "
    "up to 50 microstock-style keywords, and select an Adobe Stock category. "
    'Return a JSON like this: { "title": "...", "keywords": ["..."], "category": "..." }'
)
