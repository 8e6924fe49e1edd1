"""
Input sanitization component for the query pipeline.

Removes PII and query-injection control sequences before any text leaves
the process (model service, cache, search engine).
"""
import re
import logging
from typing import Any, List, Optional, Pattern, Tuple

logger = logging.getLogger(__name__)

MAX_QUERY_LENGTH = 500

# Ordered (name, pattern, replacement) rules. Replacements never contain
# characters any rule can match, which keeps the fixpoint loop finite.
DEFAULT_RULES: List[Tuple[str, str, str]] = [
    # Payment-card-like runs: 13-19 digits, optionally grouped by space or dash
    ("payment_card", r'(?<!\d)\d(?:[ -]?\d){12,18}(?!\d)', " "),
    # National-ID-like runs: ddd-dd-dddd or a bare 9-digit run
    ("national_id", r'(?<!\d)(?:\d{3}-\d{2}-\d{4}|\d{9})(?!\d)', " "),
    # Query-injection control sequences
    ("sql_comment", r'--+|/\*.*?\*/|/\*|\*/', " "),
    ("statement_terminator", r';+', " "),
    ("script_tag", r'<\s*/?\s*script[^>]*>', " "),
    ("sql_statement", r'\b(?:union\s+(?:all\s+)?select|drop\s+(?:table|database)|delete\s+from|insert\s+into|exec(?:ute)?\s+xp_)\b', " "),
    ("backtick", r'`+', " "),
]

class Sanitizer:
    """Applies an ordered list of pattern rules until the text stops changing."""

    def __init__(self, rules: Optional[List[Tuple[str, str, str]]] = None,
                 max_length: int = MAX_QUERY_LENGTH):
        """
        Initialize the sanitizer.

        Args:
            rules: Ordered (name, regex, replacement) rules
            max_length: Maximum length of the returned text
        """
        self.max_length = max_length
        self._rules: List[Tuple[str, Pattern, str]] = [
            (name, re.compile(pattern, re.IGNORECASE | re.DOTALL), replacement)
            for name, pattern, replacement in (rules or DEFAULT_RULES)
        ]
        # Observability counters; matched content is never retained
        self.redactions_total = 0
        self.redactions_by_rule = {name: 0 for name, _, _ in self._rules}

    def sanitize(self, text: Any) -> Tuple[str, int]:
        """
        Remove PII and injection-risk substrings.

        Args:
            text: Raw query text (non-string input is coerced)

        Returns:
            Tuple of (clean_text, redaction_count)
        """
        if text is None:
            text = ""
        elif not isinstance(text, str):
            text = str(text)

        redactions = 0
        current = self._collapse(text)

        # Removing one sequence can join neighbours into a new match, so
        # iterate to a fixpoint; each pass that changes text shrinks it.
        while True:
            changed = current
            for name, pattern, replacement in self._rules:
                changed, count = pattern.subn(replacement, changed)
                if count:
                    redactions += count
                    self.redactions_by_rule[name] += count
            changed = self._collapse(changed)
            if changed == current:
                break
            current = changed

        if redactions:
            self.redactions_total += redactions
            logger.info(f"Sanitizer removed {redactions} sensitive or unsafe sequence(s)")

        return current, redactions

    def _collapse(self, text: str) -> str:
        """Collapse whitespace and enforce the length limit."""
        collapsed = re.sub(r'\s+', ' ', text).strip()
        if len(collapsed) > self.max_length:
            collapsed = collapsed[:self.max_length].rstrip()
        return collapsed

_default_sanitizer = Sanitizer()

def sanitize(text: Any) -> Tuple[str, int]:
    """Sanitize with the default rule set."""
    return _default_sanitizer.sanitize(text)
