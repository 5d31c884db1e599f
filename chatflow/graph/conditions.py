"""
Condition evaluation - pure predicates used for branching.

Two kinds of conditions exist in a flow:

- Condition *nodes* carry a predicate over the inbound message, the
  contact or the clock. The builder stores it as a small expression such
  as ``Contains('refund', true)``, ``MediaType('image')``,
  ``TimeAfter('18:00')`` or ``Contact.city == 'Lagos'``.
- Edges may carry a declarative rule over session variables,
  ``{"variable": "plan", "operator": "equals", "value": "pro"}``, combined
  with ``{"all": [...]}`` / ``{"any": [...]}``.

Both evaluators are deterministic: the same inputs give the same answer,
and nothing here performs IO. Malformed conditions evaluate to False.
"""

import logging
import re
from datetime import UTC, datetime, time
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, Field

from chatflow.utils.templating import lookup_variable, render_template

if TYPE_CHECKING:
    from chatflow.schemas.messaging import Contact, InboundMessage

logger = logging.getLogger(__name__)

# Handles of a condition node's true / false ports
YES_HANDLES = frozenset({"yes", "true", "success", "positive"})
NO_HANDLES = frozenset({"no", "false", "failure", "negative"})


# ---------------------------------------------------------------------------
# Declarative edge rules
# ---------------------------------------------------------------------------


class EdgeRule(BaseModel):
    """A rule over session variables; leaf or ``all``/``any`` group."""

    variable: str | None = None
    operator: str = "equals"
    value: Any = None
    case_sensitive: bool = Field(default=False, alias="caseSensitive")
    all_of: list["EdgeRule"] | None = Field(default=None, alias="all")
    any_of: list["EdgeRule"] | None = Field(default=None, alias="any")

    model_config = {"populate_by_name": True, "extra": "allow"}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any, case_sensitive: bool) -> str:
    text = "" if value is None else str(value)
    return text if case_sensitive else text.lower()


def _compare(actual: Any, operator: str, expected: Any, case_sensitive: bool) -> bool:
    op = operator.lower()

    if op == "exists":
        return actual is not None
    if op in ("not_exists", "missing"):
        return actual is None
    if op == "is_empty":
        return actual in (None, "", [], {})
    if op == "is_not_empty":
        return actual not in (None, "", [], {})

    if op in ("greater_than", "less_than", "greater_or_equal", "less_or_equal"):
        left, right = _as_number(actual), _as_number(expected)
        if left is None or right is None:
            return False
        return {
            "greater_than": left > right,
            "less_than": left < right,
            "greater_or_equal": left >= right,
            "less_or_equal": left <= right,
        }[op]

    if op in ("equals", "not_equals"):
        left_num, right_num = _as_number(actual), _as_number(expected)
        if left_num is not None and right_num is not None:
            equal = left_num == right_num
        elif isinstance(actual, bool) or isinstance(expected, bool):
            equal = _as_text(actual, False) == _as_text(expected, False)
        else:
            equal = _as_text(actual, case_sensitive) == _as_text(expected, case_sensitive)
        return equal if op == "equals" else not equal

    if op == "in":
        options = expected if isinstance(expected, list) else str(expected or "").split(",")
        needle = _as_text(actual, case_sensitive).strip()
        return any(_as_text(o, case_sensitive).strip() == needle for o in options)

    left, right = _as_text(actual, case_sensitive), _as_text(expected, case_sensitive)
    if op == "contains":
        return right in left
    if op == "not_contains":
        return right not in left
    if op == "starts_with":
        return left.startswith(right)
    if op == "ends_with":
        return left.endswith(right)
    if op == "regex":
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            subject = "" if actual is None else str(actual)
            return re.search(str(expected), subject, flags) is not None
        except re.error as e:
            logger.warning(f"Invalid regex in edge condition '{expected}': {e}")
            return False

    logger.warning(f"Unknown edge condition operator '{operator}'")
    return False


def evaluate_edge_rule(rule: EdgeRule | dict[str, Any], variables: dict[str, Any]) -> bool:
    """Evaluate a declarative edge rule against session variables."""
    if isinstance(rule, dict):
        rule = EdgeRule.model_validate(rule)

    if rule.all_of is not None:
        return all(evaluate_edge_rule(r, variables) for r in rule.all_of)
    if rule.any_of is not None:
        return any(evaluate_edge_rule(r, variables) for r in rule.any_of)
    if not rule.variable:
        return True

    actual = lookup_variable(variables, rule.variable)
    expected = rule.value
    if isinstance(expected, str):
        expected = render_template(expected, variables)
    return _compare(actual, rule.operator, expected, rule.case_sensitive)


# ---------------------------------------------------------------------------
# Condition node predicates
# ---------------------------------------------------------------------------

_TEXT_FUNCTION = re.compile(
    r"^(Contains|ExactMatch|StartsWith|EndsWith)\(\s*'(.*)'\s*(?:,\s*(true|false)\s*)?\)$",
    re.DOTALL,
)
_REGEX_FUNCTION = re.compile(r"^RegexMatch\(\s*'(.*)'\s*\)$", re.DOTALL)
_MEDIA_TYPE_FUNCTION = re.compile(r"^MediaType\(\s*'([\w-]+)'\s*\)$")
_TIME_FUNCTION = re.compile(r"^Time(After|Before|Between)\(\s*'([^']*)'\s*\)$")
_ATTRIBUTE_COMPARISON = re.compile(r"^(Contact|Variable)\.([\w.\-]+)\s*(==|!=)\s*'(.*)'$")

_TEXT_OPERATORS = {
    "Contains": "contains",
    "ExactMatch": "equals",
    "StartsWith": "starts_with",
    "EndsWith": "ends_with",
}

# Builder conditionType values -> expression builders
_CONDITION_TYPE_ALIASES = {
    "message contains": "Contains",
    "contains": "Contains",
    "exact match": "ExactMatch",
    "exact": "ExactMatch",
    "equals": "ExactMatch",
    "message starts with": "StartsWith",
    "starts_with": "StartsWith",
    "message ends with": "EndsWith",
    "ends_with": "EndsWith",
    "regex match": "RegexMatch",
    "regex": "RegexMatch",
    "has media": "HasMedia",
    "media type is": "MediaType",
    "time condition": "Time",
    "contact attribute": "Contact",
}


def build_condition_expression(data: dict[str, Any]) -> str:
    """
    Return the predicate expression of a condition node.

    Prefers the stored expression (``customCondition`` in advanced mode,
    else ``condition``) and rebuilds it from the structured fields when
    neither is present.
    """
    if data.get("advancedMode") and data.get("customCondition"):
        return str(data["customCondition"]).strip()
    if data.get("condition"):
        return str(data["condition"]).strip()

    kind = _CONDITION_TYPE_ALIASES.get(str(data.get("conditionType", "")).strip().lower())
    value = str(data.get("conditionValue", ""))
    flag = ", true" if data.get("caseSensitive") else ""
    if kind in _TEXT_OPERATORS:
        return f"{kind}('{value}'{flag})"
    if kind == "RegexMatch":
        return f"RegexMatch('{value}')"
    if kind == "HasMedia":
        return "HasMedia()"
    if kind == "MediaType":
        return f"MediaType('{data.get('mediaType', 'image')}')"
    if kind == "Time":
        operator = str(data.get("timeOperator", "after")).capitalize()
        return f"Time{operator}('{data.get('timeValue', '')}')"
    if kind == "Contact":
        attribute = data.get("contactAttribute", "name")
        return f"Contact.{attribute} == '{data.get('attributeValue', '')}'"
    return f"Contains('{value}')"


def _parse_clock(value: str) -> time | None:
    try:
        hours, minutes = value.strip().split(":")[:2]
        return time(int(hours), int(minutes))
    except (ValueError, TypeError):
        return None


def _local_now(now: datetime, timezone: str | None) -> datetime:
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    if timezone:
        try:
            return now.astimezone(ZoneInfo(timezone))
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone '{timezone}' in condition; using UTC")
    return now.astimezone(UTC)


def _contact_attribute(contact: "Contact | None", attribute: str) -> Any:
    if contact is None:
        return None
    if attribute in contact.attributes:
        return contact.attributes[attribute]
    return getattr(contact, attribute, None)


def evaluate_condition_node(
    data: dict[str, Any],
    message: "InboundMessage",
    variables: dict[str, Any],
    contact: "Contact | None" = None,
    now: datetime | None = None,
) -> bool:
    """
    Evaluate a condition node's predicate.

    Args:
        data: Condition node configuration
        message: Inbound message being processed
        variables: Session variables (used for ``{{...}}`` in values)
        contact: Contact, for ``Contact.<attr>`` comparisons
        now: Clock reading for time conditions (defaults to current UTC time)

    Returns:
        Predicate result; unparseable expressions are False
    """
    expression = build_condition_expression(data)
    content = message.content or ""

    match = _TEXT_FUNCTION.match(expression)
    if match:
        func, raw_value, flag = match.groups()
        value = render_template(raw_value, variables)
        case_sensitive = flag == "true"
        if func == "ExactMatch":
            return _compare(content.strip(), "equals", value.strip(), case_sensitive)
        return _compare(content, _TEXT_OPERATORS[func], value, case_sensitive)

    match = _REGEX_FUNCTION.match(expression)
    if match:
        return _compare(content, "regex", match.group(1), bool(data.get("caseSensitive")))

    if expression == "HasMedia()":
        return message.has_media

    match = _MEDIA_TYPE_FUNCTION.match(expression)
    if match:
        return message.has_media and message.message_type == match.group(1)

    match = _TIME_FUNCTION.match(expression)
    if match:
        operator, raw_value = match.groups()
        current = _local_now(now or datetime.now(UTC), data.get("timezone")).time()
        current = current.replace(second=0, microsecond=0)
        if operator == "Between":
            bounds = [_parse_clock(v) for v in raw_value.split(",")]
            if len(bounds) != 2 or None in bounds:
                logger.warning(f"Malformed time range in condition: '{raw_value}'")
                return False
            start, end = bounds
            if start <= end:
                return start <= current <= end
            return current >= start or current <= end  # overnight window
        target = _parse_clock(raw_value)
        if target is None:
            logger.warning(f"Malformed time in condition: '{raw_value}'")
            return False
        return current > target if operator == "After" else current < target

    match = _ATTRIBUTE_COMPARISON.match(expression)
    if match:
        scope, name, operator, raw_value = match.groups()
        if scope == "Contact":
            actual = _contact_attribute(contact, name)
        else:
            actual = lookup_variable(variables, name)
        expected = render_template(raw_value, variables)
        return _compare(actual, "equals" if operator == "==" else "not_equals", expected, False)

    logger.warning(f"Unrecognised condition expression: {expression!r}")
    return False
