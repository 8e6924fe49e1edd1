"""
LLM setup and utility functions.
"""
from langchain_google_genai import ChatGoogleGenerativeAI
from langchain_community.chat_models import ChatOllama
from langchain_community.embeddings import HuggingFaceEmbeddings
from typing import Any
import json
import logging
import re

from config import LLM_CONFIG, LOCAL_LLM_CONFIG, EMBEDDING_CONFIG
from models.query import ModelTier

logger = logging.getLogger(__name__)

def get_llm(tier: ModelTier = ModelTier.LOW_COST):
    """
    Initialize and return the chat model for a routing tier.

    Args:
        tier: Which model tier to use

    Returns:
        Configured chat model instance
    """
    try:
        if tier == ModelTier.LOCAL:
            return ChatOllama(
                model=LOCAL_LLM_CONFIG["model"],
                base_url=LOCAL_LLM_CONFIG["base_url"],
                temperature=LLM_CONFIG["temperature"]
            )
        model = (LLM_CONFIG["high_capability_model"] if tier == ModelTier.HIGH_CAPABILITY
                 else LLM_CONFIG["low_cost_model"])
        return ChatGoogleGenerativeAI(
            model=model,
            temperature=LLM_CONFIG["temperature"],
            api_key=LLM_CONFIG["api_key"]
        )
    except Exception as e:
        logger.error(f"Failed to initialize LLM for tier {tier.value}: {str(e)}")
        raise

def get_embeddings():
    """
    Initialize and return the embeddings model.

    Returns:
        HuggingFaceEmbeddings: Configured embeddings instance
    """
    try:
        embeddings = HuggingFaceEmbeddings(
            model_name=EMBEDDING_CONFIG["model"],
            model_kwargs={'device': EMBEDDING_CONFIG["device"]}
        )
        return embeddings
    except Exception as e:
        logger.error(f"Failed to initialize embeddings model: {str(e)}")
        raise

def parse_json_response(content: Any) -> Any:
    """
    Parse a JSON payload out of an LLM response.

    Models sometimes wrap JSON in markdown fences; those are stripped first.

    Args:
        content: Raw response content

    Returns:
        The decoded JSON value

    Raises:
        json.JSONDecodeError: If no JSON can be decoded
    """
    text = content if isinstance(content, str) else str(content)
    text = text.strip()
    fenced = re.match(r'^```(?:json)?\s*(.*?)\s*```$', text, re.DOTALL)
    if fenced:
        text = fenced.group(1)
    return json.loads(text)
