"""
Prompt templates for the query understanding pipeline.
"""
from langchain_core.prompts import ChatPromptTemplate

# Intent Classification Prompt
INTENT_CLASSIFICATION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are an expert in classifying e-commerce search queries by intent.
    Categorize the query into ONE of these intents:
    - PRODUCT_DISCOVERY: General browsing or exploring product categories
    - SPECIFIC_PRODUCT: Looking for a specific product
    - ATTRIBUTE_SEARCH: Searching by specific product attributes or features
    - PROBLEM_SOLUTION: Describing a problem seeking products that solve it
    - COMPARISON: Comparing multiple products or types
    - PRICE_BASED: Search primarily focused on price considerations
    - AVAILABILITY: Checking if something is in stock or available

    Also count the distinct entities the query names (brands, product types,
    model numbers, attributes such as colors or sizes, price constraints).

    Return ONLY a JSON object like {{"intent": "PRODUCT_DISCOVERY", "entity_count": 2}}, no other text."""),
    ("human", "{query}")
])

# Query Expansion Prompt
QUERY_EXPANSION_PROMPT = ChatPromptTemplate.from_messages([
    ("system", """You are an expert in expanding e-commerce search queries for a product catalog.

    For the query, list up to {max_terms} additional search terms that:
    1. Are synonyms or alternate names shoppers and sellers use
    2. Are concrete specifications implied by the query (standards, formats, features)
    3. Would appear in matching product titles or descriptions

    Do not repeat words already in the query. Do not invent brands.

    Return ONLY a JSON array of objects with "term" and "confidence" (0.0-1.0),
    for example [{{"term": "UHD", "confidence": 0.9}}], no other text."""),
    ("human", "{query}")
])
