import os
from dotenv import load_dotenv
import logging

# Configure logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

# Load .env file if it exists (for local development)
env_path = os.path.join(os.path.dirname(__file__), "..", ".env")
if os.path.exists(env_path):
    load_dotenv(env_path)
    logger.info("Loaded .env file for local development")
else:
    logger.info("No .env file found, using environment variables")

# Text generation (any OpenAI-compatible chat endpoint; Together AI by default)
TEXT_API_KEY = os.getenv("TEXT_API_KEY", "") or os.getenv("TOGETHER_API_KEY", "")
TEXT_API_BASE_URL = os.getenv("TEXT_API_BASE_URL", "https://api.together.xyz/v1").strip()
TEXT_MODEL = os.getenv("TEXT_MODEL", "meta-llama/Llama-3.3-70B-Instruct-Turbo-Free")
TEXT_TIMEOUT_S = float(os.getenv("TEXT_TIMEOUT_S", "60"))

# Image generation
IMAGE_API_KEY = os.getenv("IMAGE_API_KEY", "") or os.getenv("TOGETHER_API_KEY", "")
IMAGE_API_URL = os.getenv("IMAGE_API_URL", "https://api.together.xyz/v1/images/generations").strip()
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "black-forest-labs/FLUX.1-schnell-Free")
IMAGE_STEPS = int(os.getenv("IMAGE_STEPS", "4"))
IMAGE_TIMEOUT_S = float(os.getenv("IMAGE_TIMEOUT_S", "60"))

# Session storage (Vercel KV / Upstash REST). Unset means in-memory storage.
KV_REST_API_URL = os.getenv("KV_REST_API_URL", "").strip()
KV_REST_API_TOKEN = os.getenv("KV_REST_API_TOKEN", "").strip()
KV_TIMEOUT_S = float(os.getenv("KV_TIMEOUT_S", "10"))
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(60 * 60 * 2)))

# Story shape
STORY_TARGET_STEPS = int(os.getenv("STORY_TARGET_STEPS", "5"))
STORY_CONTEXT_SEGMENTS = int(os.getenv("STORY_CONTEXT_SEGMENTS", "4"))

PORT = int(os.getenv("PORT", "3000"))

# Comma-separated list of allowed origins for CORS (e.g., "https://app.example.com,http://localhost:8081").
_allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "").strip()
if _allowed_origins_env:
    ALLOWED_ORIGINS = [o.strip() for o in _allowed_origins_env.split(",") if o.strip()]
else:
    # The mobile client talks to the API from arbitrary origins during development.
    ALLOWED_ORIGINS = ["*"]

def has_all_keys() -> bool:
    keys_present = all([TEXT_API_KEY, IMAGE_API_KEY])
    if not keys_present:
        missing = []
        if not TEXT_API_KEY: missing.append("TEXT_API_KEY/TOGETHER_API_KEY")
        if not IMAGE_API_KEY: missing.append("IMAGE_API_KEY/TOGETHER_API_KEY")
        logger.warning(f"Missing API keys: {', '.join(missing)}")
    return keys_present

def has_kv_store() -> bool:
    return bool(KV_REST_API_URL and KV_REST_API_TOKEN)
