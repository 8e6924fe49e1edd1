"""
Configuration settings for the query understanding pipeline.
"""
import os
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Database configuration (offline review log)
DB_CONFIG = {
    "type": os.environ.get("DB_TYPE", "sqlite"),
    "host": os.environ.get("DB_HOST", "localhost"),
    "port": int(os.environ.get("DB_PORT", "5432")),
    "user": os.environ.get("DB_USER", ""),
    "password": os.environ.get("DB_PASSWORD", ""),
    "database": os.environ.get("DB_NAME", "query_review"),
    "connection_string": ""
}

# Set database connection string based on type
if DB_CONFIG["type"] == "postgres":
    DB_CONFIG["connection_string"] = f"postgresql://{DB_CONFIG['user']}:{DB_CONFIG['password']}@{DB_CONFIG['host']}:{DB_CONFIG['port']}/{DB_CONFIG['database']}"
elif DB_CONFIG["type"] == "sqlite":
    DB_CONFIG["connection_string"] = os.environ.get("DB_URL", "sqlite:///data/query_review.db")

# LLM configuration, one model per routing tier
LLM_CONFIG = {
    "low_cost_model": os.environ.get("LLM_LOW_COST_MODEL", "gemini-2.0-flash-lite"),
    "high_capability_model": os.environ.get("LLM_HIGH_CAPABILITY_MODEL", "gemini-2.0-flash"),
    "temperature": float(os.environ.get("LLM_TEMPERATURE", "0.1")),
    "api_key": os.environ.get("LLM_API_KEY", "")
}

# Local/offline model used by the fallback controller
LOCAL_LLM_CONFIG = {
    "model": os.environ.get("LOCAL_LLM_MODEL", "llama3.2:1b"),
    "base_url": os.environ.get("LOCAL_LLM_URL", "http://localhost:11434"),
    "timeout_ms": int(os.environ.get("LOCAL_LLM_TIMEOUT_MS", "120")),
}

# Embedding configuration
EMBEDDING_CONFIG = {
    "model": os.environ.get("EMBEDDING_MODEL", "sentence-transformers/all-MiniLM-L6-v2"),
    "device": os.environ.get("EMBEDDING_DEVICE", "cpu"),
    "dimension": int(os.environ.get("VECTOR_DIMENSION", "384")),
}

# Query cache configuration
CACHE_CONFIG = {
    "backend": os.environ.get("CACHE_BACKEND", "memory"),
    "ttl": int(os.environ.get("CACHE_TTL", "3600")),  # in seconds
    "similarity_threshold": float(os.environ.get("CACHE_SIMILARITY_THRESHOLD", "0.85")),
    "nearest_k": int(os.environ.get("CACHE_NEAREST_K", "5")),
    "qdrant_url": os.environ.get("QDRANT_URL", "http://localhost:6333"),
    "qdrant_api_key": os.environ.get("QDRANT_API_KEY", ""),
    "collection_name": os.environ.get("QDRANT_COLLECTION", "query_cache"),
    "dimension": int(os.environ.get("VECTOR_DIMENSION", "384")),
}

# Pipeline budgets and tuning knobs
PIPELINE_CONFIG = {
    "budget_ms": int(os.environ.get("PIPELINE_BUDGET_MS", "250")),
    "stage_timeouts_ms": {
        "cache_lookup": int(os.environ.get("CACHE_LOOKUP_TIMEOUT_MS", "20")),
        "classify": int(os.environ.get("CLASSIFY_TIMEOUT_MS", "60")),
        "expand": int(os.environ.get("EXPAND_TIMEOUT_MS", "120")),
        "cache_store": int(os.environ.get("CACHE_STORE_TIMEOUT_MS", "20")),
    },
    "model_timeout_ms": int(os.environ.get("MODEL_TIMEOUT_MS", "60")),
    "embed_timeout_ms": int(os.environ.get("EMBED_TIMEOUT_MS", "80")),
    "entity_threshold": int(os.environ.get("ENTITY_THRESHOLD", "3")),
    "max_terms": int(os.environ.get("MAX_EXPANSION_TERMS", "8")),
    "result_limit": int(os.environ.get("RESULT_LIMIT", "50")),
    "vector_k": int(os.environ.get("VECTOR_K", "50")),
    "vector_k_max": int(os.environ.get("VECTOR_K_MAX", "1000")),
    "relax_threshold": int(os.environ.get("RELAX_THRESHOLD", "50")),
    "max_relaxations": int(os.environ.get("MAX_RELAXATIONS", "2")),
    "widen_percent": float(os.environ.get("WIDEN_PERCENT", "15")),
    "rule_table_path": os.environ.get("RULE_TABLE_PATH", ""),
}

# Search-execution collaborator
SEARCH_CONFIG = {
    "url": os.environ.get("SEARCH_URL", "http://localhost:8080/search"),
    "api_key": os.environ.get("SEARCH_API_KEY", ""),
    "timeout_ms": int(os.environ.get("SEARCH_TIMEOUT_MS", "150")),
}

# Application configuration
APP_CONFIG = {
    "debug": os.environ.get("DEBUG", "False").lower() == "true",
    "log_level": os.environ.get("LOG_LEVEL", "INFO"),
}

# Feature flags
FEATURES = {
    "extract_price_from_text": os.environ.get("EXTRACT_PRICE", "True").lower() == "true",
    "record_failed_queries": os.environ.get("RECORD_FAILED_QUERIES", "True").lower() == "true",
    "log_telemetry": os.environ.get("LOG_TELEMETRY", "True").lower() == "true",
}

def get_config() -> Dict[str, Any]:
    """Return the complete configuration dictionary."""
    return {
        "llm": LLM_CONFIG,
        "local_llm": LOCAL_LLM_CONFIG,
        "embedding": EMBEDDING_CONFIG,
        "cache": CACHE_CONFIG,
        "pipeline": PIPELINE_CONFIG,
        "search": SEARCH_CONFIG,
        "db": DB_CONFIG,
        "app": APP_CONFIG,
        "features": FEATURES
    }
