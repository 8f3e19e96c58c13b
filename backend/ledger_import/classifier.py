"""
Category classification for imported transactions.

Resolution order, first hit wins:
1. user corrections (exact, then substring match on the normalized text)
2. merchant rules, highest priority first, matched by regex
3. keyword scoring across all rules; below CONFIDENCE_THRESHOLD the
   category falls back to "Other"
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from pydantic import BaseModel

from .corrections import CorrectionMap, normalize_description
from .models import CandidateTransaction, ClassificationMethod

logger = logging.getLogger(__name__)

CONFIDENCE_THRESHOLD = 0.5

DEFAULT_CATEGORY = "Other"

VALID_CATEGORIES = (
    "Food & Dining",
    "Transportation",
    "Shopping",
    "Utilities",
    "Entertainment",
    "Healthcare",
    "Subscriptions",
    "Education",
    "Housing",
    "Personal Care",
    "Travel",
    "Other",
)


@dataclass(frozen=True)
class ClassificationRule:
    id: str
    pattern: "re.Pattern[str]"
    category: str
    priority: int
    keywords: Tuple[str, ...]

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "pattern": self.pattern.pattern,
            "category": self.category,
            "priority": self.priority,
            "keywords": list(self.keywords),
        }


def _rule(rule_id: str, pattern: str, category: str, priority: int, keywords: Sequence[str]):
    return ClassificationRule(
        id=rule_id,
        pattern=re.compile(pattern, re.IGNORECASE),
        category=category,
        priority=priority,
        keywords=tuple(keywords),
    )


CLASSIFICATION_RULES: Tuple[ClassificationRule, ...] = (
    _rule(
        "food-delivery",
        r"swiggy|zomato|uber\s*eats|dominos|pizza|mcdonald|kfc|starbucks|cafe|restaurant|food|dining|eatery|bistro|diner|takeout|takeaway",
        "Food & Dining",
        10,
        ["swiggy", "zomato", "uber eats", "dominos", "pizza", "mcdonald", "kfc", "starbucks", "cafe", "restaurant", "food"],
    ),
    _rule(
        "transportation",
        r"uber|ola|rapido|metro|petrol|fuel|parking|toll|irctc|railway|flight|airline|cab|taxi|lyft|grab|gojek|diesel|gas\s*station",
        "Transportation",
        10,
        ["uber", "ola", "rapido", "metro", "petrol", "fuel", "parking", "toll", "irctc", "railway", "flight", "airline"],
    ),
    _rule(
        "shopping",
        r"amazon|flipkart|myntra|ajio|nykaa|mall|store|shop|retail|ebay|walmart|target|costco|ikea|h&m|zara|uniqlo",
        "Shopping",
        10,
        ["amazon", "flipkart", "myntra", "ajio", "nykaa", "mall", "store", "shop", "retail"],
    ),
    _rule(
        "utilities",
        r"electricity|water|gas|internet|broadband|wifi|mobile|recharge|bill\s*pay|utility|power|sewage|trash|waste",
        "Utilities",
        10,
        ["electricity", "water", "gas", "internet", "broadband", "wifi", "mobile", "recharge", "bill pay"],
    ),
    _rule(
        "entertainment",
        r"netflix|prime|hotstar|spotify|youtube|movie|cinema|pvr|inox|game|gaming|playstation|xbox|nintendo|hulu|disney\+|hbo",
        "Entertainment",
        10,
        ["netflix", "prime", "hotstar", "spotify", "youtube", "movie", "cinema", "pvr", "inox", "game"],
    ),
    _rule(
        "healthcare",
        r"hospital|clinic|pharmacy|medical|doctor|health|apollo|medplus|1mg|medicine|dental|dentist|optician|lab|diagnostic",
        "Healthcare",
        10,
        ["hospital", "clinic", "pharmacy", "medical", "doctor", "health", "apollo", "medplus", "1mg"],
    ),
    _rule(
        "subscriptions",
        r"subscription|membership|premium|annual|monthly\s*fee|recurring|plan\s*renewal",
        "Subscriptions",
        8,
        ["subscription", "membership", "premium", "annual", "monthly fee"],
    ),
    _rule(
        "education",
        r"school|college|university|course|udemy|coursera|book|education|tuition|training|workshop|seminar|certification",
        "Education",
        10,
        ["school", "college", "university", "course", "udemy", "coursera", "book", "education", "tuition"],
    ),
    _rule(
        "housing",
        r"rent|maintenance|society|housing|apartment|flat|mortgage|property|landlord|lease",
        "Housing",
        10,
        ["rent", "maintenance", "society", "housing", "apartment", "flat"],
    ),
    _rule(
        "personal-care",
        r"salon|spa|gym|fitness|grooming|beauty|haircut|massage|wellness|yoga|pilates",
        "Personal Care",
        10,
        ["salon", "spa", "gym", "fitness", "grooming", "beauty"],
    ),
    _rule(
        "travel",
        r"hotel|booking|makemytrip|goibibo|airbnb|travel|trip|vacation|resort|hostel|expedia|trivago",
        "Travel",
        10,
        ["hotel", "booking", "makemytrip", "goibibo", "airbnb", "travel", "trip", "vacation"],
    ),
)


class Classification(BaseModel):
    category: str
    confidence: float
    method: ClassificationMethod


class CategoryClassifier:
    """Assigns categories to transaction descriptions and learns from corrections."""

    def __init__(
        self,
        corrections: Optional[CorrectionMap] = None,
        rules: Sequence[ClassificationRule] = CLASSIFICATION_RULES,
    ):
        self.corrections = corrections if corrections is not None else CorrectionMap()
        self.rules = tuple(rules)
        # sorted() is stable, so equal priorities keep declaration order
        self._rules_by_priority = tuple(sorted(self.rules, key=lambda r: -r.priority))

    def match_rules(self, description: Optional[str]) -> Optional[ClassificationRule]:
        normalized = normalize_description(description)
        if not normalized:
            return None
        for rule in self._rules_by_priority:
            if rule.pattern.search(normalized):
                return rule
        return None

    def keyword_scores(self, description: Optional[str]) -> Dict[str, int]:
        """One point per keyword found in the description, summed per category."""
        normalized = normalize_description(description)
        scores: Dict[str, int] = {}
        if not normalized:
            return scores
        for rule in self.rules:
            score = sum(1 for keyword in rule.keywords if keyword.lower() in normalized)
            if score > 0:
                scores[rule.category] = scores.get(rule.category, 0) + score
        return scores

    def fallback_classify(self, description: Optional[str]) -> Classification:
        scores = self.keyword_scores(description)

        best_category = DEFAULT_CATEGORY
        best_score = 0
        total_score = 0
        for category, score in scores.items():
            total_score += score
            if score > best_score:
                best_score = score
                best_category = category

        confidence = best_score / (total_score + 1) if total_score > 0 else 0.0
        if confidence < CONFIDENCE_THRESHOLD:
            best_category = DEFAULT_CATEGORY

        return Classification(
            category=best_category,
            confidence=confidence,
            method=ClassificationMethod.FALLBACK,
        )

    def classify(
        self, description: Optional[str], corrections: Optional[Dict[str, str]] = None
    ) -> Classification:
        """
        Classify a single description.

        Args:
            description: Transaction description as found in the statement
            corrections: Correction map already loaded by the caller; the
                store is read when omitted

        Returns:
            Classification with category, confidence in [0, 1] and method
        """
        corrected = self.corrections.find(description or "", corrections=corrections)
        if corrected is not None:
            return Classification(
                category=corrected, confidence=1.0, method=ClassificationMethod.CORRECTION
            )

        rule = self.match_rules(description)
        if rule is not None:
            return Classification(
                category=rule.category, confidence=1.0, method=ClassificationMethod.RULE
            )

        return self.fallback_classify(description)

    def classify_batch(
        self, transactions: Sequence[CandidateTransaction]
    ) -> List[CandidateTransaction]:
        # one store read per batch
        corrections = self.corrections.all()
        classified = []
        for transaction in transactions:
            result = self.classify(transaction.description, corrections=corrections)
            classified.append(
                transaction.model_copy(
                    update={
                        "category": result.category,
                        "classification_confidence": result.confidence,
                        "classification_method": result.method,
                    }
                )
            )
        return classified

    def record_correction(self, description: Optional[str], category: Optional[str]) -> bool:
        """
        Remember a user's category choice for future classifications.

        Returns:
            False when the category is unknown or the description is blank
        """
        if not category or category not in VALID_CATEGORIES:
            return False
        if not normalize_description(description):
            return False

        self.corrections.set(description, category)
        logger.info("Recorded category correction -> %s", category)
        return True

    def clear_corrections(self) -> None:
        self.corrections.clear()

    def get_rules(self) -> List[ClassificationRule]:
        return list(self.rules)

    @staticmethod
    def get_valid_categories() -> List[str]:
        return list(VALID_CATEGORIES)
