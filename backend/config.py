"""Configuration management for the Inspiration Chat backend."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
SILICON_FLOW_API_KEY = os.getenv("SILICON_FLOW_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Upstream Configuration
SILICON_FLOW_API_URL = os.getenv(
    "SILICON_FLOW_API_URL",
    "https://api.siliconflow.cn/v1/chat/completions"
)
DEFAULT_MODEL = os.getenv("DEFAULT_MODEL", "Qwen/QwQ-32B")
UPSTREAM_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT", "60"))  # seconds

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_FORMAT = os.getenv("LOG_FORMAT", "text")  # "text" or "json"

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Analysis Configuration
TITLE_MAX_LENGTH = 50
SUMMARY_MAX_LENGTH = 200
MAX_TAGS = 5

# Heuristic fallback
FALLBACK_TITLE_LENGTH = 20
FALLBACK_SUMMARY_LENGTH = 100
FALLBACK_TAG_COUNT = 3

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
