"""Configuration management for DocLens retrieval engine."""
import os
import logging
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# API Keys
GROQ_API_KEY = os.getenv("GROQ_API_KEY")
HUGGINGFACE_API_KEY = os.getenv("HUGGINGFACE_API_KEY")
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_KEY")

# Server Configuration
PORT = int(os.getenv("PORT", "8000"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# CORS Configuration
CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:3001"
).split(",")

# Model Configuration
EMBEDDING_MODEL = "sentence-transformers/all-mpnet-base-v2"
EMBEDDING_DIMENSIONS = 768
EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "llama-3.1-8b-instant")
ANSWER_MODEL = os.getenv("ANSWER_MODEL", "llama-3.3-70b-versatile")

# Chunking Configuration (characters, ~4 chars per token)
TARGET_CHUNK_SIZE = 2000
MAX_CHUNK_SIZE = 4000
CHUNK_OVERLAP = 200
MIN_CHUNK_SIZE = 400

# Retrieval Configuration
DEFAULT_TOP_K = 10
DETAILED_TOP_K = 25
SEMANTIC_WEIGHT = float(os.getenv("SEMANTIC_WEIGHT", "0.8"))
KEYWORD_WEIGHT = float(os.getenv("KEYWORD_WEIGHT", "0.2"))
RRF_K = int(os.getenv("RRF_K", "60"))
ENTITY_BOOST = 0.15
ENTITY_BASE_SIMILARITY = 0.5
QUERY_TIMEOUT_SECONDS = float(os.getenv("QUERY_TIMEOUT_SECONDS", "30"))

# Context budgets (tokens) per query mode
SIMPLE_CONTEXT_TOKENS = 6000
DETAILED_CONTEXT_TOKENS = 12000

# Answer generation limits (completion tokens) per query mode
SIMPLE_ANSWER_TOKENS = 1024
DETAILED_ANSWER_TOKENS = 4096

# Entity Extraction Configuration
ENTITY_BATCH_SIZE = 3  # chunks per LLM call
ENTITY_PARALLEL_BATCHES = 8  # batches in flight per group
ENTITY_MAX_RETRIES = 2
ENTITY_MAX_OUTPUT_TOKENS = 4096

# LLM retry configuration (rate limiting)
LLM_MAX_RETRIES = 3
LLM_INITIAL_DELAY = 1.0

# Rate limits: endpoint -> (window seconds, max requests)
RATE_LIMITS = {
    "query": (60, 30),
    "upload": (60, 10),
    "entities": (60, 5),
    "default": (60, 100),
}

# Logging Configuration
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
