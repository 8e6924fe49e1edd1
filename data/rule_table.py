"""
Static synonym/specification rule table for query expansion.
"""
import json
import logging
import os
import re
from typing import Dict, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Curated expansions: phrase -> spec and synonym terms
DEFAULT_RULES: Dict[str, List[str]] = {
    "4k tv": ["UHD", "HDR10", "Dolby Vision", "120Hz refresh"],
    "gaming laptop": ["RTX", "high refresh display", "dedicated GPU", "144Hz"],
    "laptop": ["notebook", "ultrabook"],
    "running shoes": ["trainers", "road running", "cushioned sneakers"],
    "noise cancelling headphones": ["ANC", "over-ear", "wireless headphones"],
    "wireless earbuds": ["true wireless", "TWS", "bluetooth earbuds"],
    "phone charger": ["USB-C charger", "fast charger", "power adapter"],
    "mechanical keyboard": ["hot-swappable", "tactile switches", "RGB keyboard"],
    "coffee maker": ["drip coffee", "espresso machine", "brewer"],
    "winter jacket": ["parka", "insulated jacket", "puffer"],
    "smartwatch": ["fitness tracker", "heart rate monitor", "GPS watch"],
    "air fryer": ["convection fryer", "oil-free fryer"],
}


class RuleTable:
    """
    Read-only phrase -> terms lookup, case-insensitive.

    Shared across requests without locking; it is never mutated after load.
    """

    def __init__(self, rules: Optional[Mapping[str, List[str]]] = None):
        source = DEFAULT_RULES if rules is None else rules
        self._rules: Dict[str, List[str]] = {
            self._key(phrase): list(terms) for phrase, terms in source.items()
        }
        # Longest phrases first so "gaming laptop" wins over "laptop"
        self._phrases = sorted(self._rules, key=len, reverse=True)
        self._patterns = {
            phrase: re.compile(r'(?<!\w)' + re.escape(phrase) + r'(?!\w)')
            for phrase in self._phrases
        }

    @staticmethod
    def _key(text: str) -> str:
        return re.sub(r'\s+', ' ', text.lower()).strip()

    @classmethod
    def from_json(cls, path: str) -> "RuleTable":
        """
        Load a rule table from a JSON object file.

        Args:
            path: Path to a {"phrase": ["term", ...]} JSON file

        Returns:
            RuleTable instance
        """
        with open(path, 'r') as f:
            rules = json.load(f)
        logger.info(f"Loaded {len(rules)} expansion rules from {path}")
        return cls(rules)

    def lookup(self, text: str) -> List[str]:
        """
        Return the rule terms for a query.

        An exact phrase match wins. Otherwise every rule phrase contained in
        the text (as whole words, not overlapping a longer matched phrase)
        contributes its terms. A miss returns an empty list.
        """
        key = self._key(text)
        if key in self._rules:
            return list(self._rules[key])

        terms: List[str] = []
        covered = key
        for phrase in self._phrases:
            if self._patterns[phrase].search(covered):
                terms.extend(self._rules[phrase])
                # Blank out the phrase so shorter sub-phrases don't also fire
                covered = self._patterns[phrase].sub(' ', covered)
        return terms

    def __len__(self) -> int:
        return len(self._rules)


def load_rule_table(path: str = "") -> RuleTable:
    """Load the configured rule table, falling back to the built-in rules."""
    if path and os.path.exists(path):
        return RuleTable.from_json(path)
    if path:
        logger.warning(f"Rule table file not found: {path}, using built-in rules")
    return RuleTable()
