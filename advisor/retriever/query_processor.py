"""
Query Processor

Parses user questions before retrieval: normalizes the text, classifies the
question type and extracts the keywords the text-search fallback matches on.
"""

import re
from typing import List
from dataclasses import dataclass, field
from enum import Enum


class QuestionType(str, Enum):
    """What a question is mostly about"""
    FAMILY = "family"  # "Whose kid plays baseball?"
    STOCK = "stock"  # "Who wanted to sell AAPL?"
    MEETING = "meeting"  # "When is my meeting with Sara?"
    GENERAL = "general"  # Catch-all


@dataclass
class ParsedQuery:
    """Parsed representation of a user question"""
    original: str
    cleaned: str
    question_type: QuestionType = QuestionType.GENERAL
    keywords: List[str] = field(default_factory=list)

    @property
    def search_terms(self) -> List[str]:
        """Whole question first, then keywords"""
        terms = [self.cleaned] if self.cleaned else []
        return terms + [k for k in self.keywords if k != self.cleaned]


class QueryProcessor:
    """
    Processes user questions for retrieval.

    Responsibilities:
    1. Clean and normalize question text
    2. Detect the question type (family, stock, meeting)
    3. Extract keywords for the substring fallback
    """

    TYPE_PATTERNS = {
        QuestionType.FAMILY: [
            r"\bkids?\b", r"\bchild(ren)?\b", r"\bsons?\b", r"\bdaughters?\b",
            r"\bfamily\b", r"\bbaseball\b", r"\bsoccer\b", r"\bschool\b",
        ],
        QuestionType.STOCK: [
            r"\bstocks?\b", r"\baapl\b", r"\binvest(ment|ments|ing)?\b",
            r"\bportfolio\b", r"\bsell(ing)?\b", r"\bbuy(ing)?\b",
        ],
        QuestionType.MEETING: [
            r"\bmeetings?\b", r"\bappointments?\b", r"\bschedul(e|ed|ing)\b", r"\bcalendar\b",
        ],
    }

    # Stop words to filter from keywords
    STOP_WORDS = {
        "the", "a", "an", "is", "are", "was", "were", "be", "been", "being",
        "have", "has", "had", "do", "does", "did", "will", "would", "could",
        "should", "may", "might", "must", "shall", "can", "need", "to", "of",
        "in", "for", "on", "with", "at", "by", "from", "up", "about", "into",
        "over", "after", "we", "our", "us", "i", "me", "my", "you", "your",
        "it", "its", "they", "them", "their", "this", "that", "these", "those",
        "what", "which", "who", "whom", "when", "where", "why", "how", "and",
        "or", "but", "if", "because", "as", "any", "anyone", "someone", "tell",
        "mentioned", "said", "say", "says", "find", "show", "get", "know",
    }

    def parse(self, query: str) -> ParsedQuery:
        """Parse a question into a ParsedQuery"""
        cleaned = self._clean_query(query or "")
        return ParsedQuery(
            original=query or "",
            cleaned=cleaned,
            question_type=self._detect_type(cleaned),
            keywords=self._extract_keywords(cleaned),
        )

    def _clean_query(self, query: str) -> str:
        """Clean and normalize query text"""
        cleaned = query.lower().strip()
        cleaned = re.sub(r'\s+', ' ', cleaned)
        cleaned = re.sub(r'[?.!,;:]+$', '', cleaned)
        return cleaned

    def _detect_type(self, query: str) -> QuestionType:
        for question_type, patterns in self.TYPE_PATTERNS.items():
            for pattern in patterns:
                if re.search(pattern, query):
                    return question_type
        return QuestionType.GENERAL

    def _extract_keywords(self, query: str) -> List[str]:
        """Extract important keywords from query"""
        words = re.findall(r"[\w@.'-]+", query)
        keywords = [
            w.strip(".'-") for w in words
            if w not in self.STOP_WORDS and len(w.strip(".'-")) > 2
        ]

        # Deduplicate and return
        return list(dict.fromkeys(keywords))[:15]
