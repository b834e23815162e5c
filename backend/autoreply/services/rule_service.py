# /autoreply/services/rule_service.py

import logging
import re
from typing import Iterable, List, Optional

from autoreply.models.config import AutoReplyRule, RuleCondition

# Trigger-rule matching for auto-replies. Rules are evaluated highest priority
# first; among equal priorities the first-declared rule wins.

logger = logging.getLogger(__name__)


def normalize(text: str) -> str:
    return (text or "").strip().casefold()


def order_rules(rules: Iterable[AutoReplyRule]) -> List[AutoReplyRule]:
    """Active rules by descending priority. sorted() is stable, so declaration order breaks ties."""
    return sorted((rule for rule in rules if rule.is_active), key=lambda rule: -rule.priority)


def rule_matches(rule: AutoReplyRule, normalized_text: str) -> bool:
    trigger = normalize(rule.trigger)

    if rule.condition == RuleCondition.CONTAINS:
        return trigger in normalized_text
    if rule.condition == RuleCondition.EQUALS:
        return normalized_text == trigger
    if rule.condition == RuleCondition.STARTS_WITH:
        return normalized_text.startswith(trigger)
    if rule.condition == RuleCondition.REGEX:
        try:
            pattern = re.compile(rule.trigger, re.IGNORECASE)
        except re.error as e:
            logger.warning(f"Invalid regex in auto-reply rule {rule.id} ({rule.trigger!r}): {e}. Skipping rule.")
            return False
        return pattern.search(normalized_text) is not None

    logger.warning(f"Unknown condition {rule.condition!r} on auto-reply rule {rule.id}")
    return False


def match_rule(message_text: str, rules: Iterable[AutoReplyRule]) -> Optional[AutoReplyRule]:
    """Return the highest-priority active rule matching message_text, or None."""
    normalized_text = normalize(message_text)
    for rule in order_rules(rules):
        if rule_matches(rule, normalized_text):
            logger.debug(f"Auto-reply rule {rule.id} matched (priority {rule.priority}, {rule.condition.value})")
            return rule
    return None
