"""
Boolean expressions over the conversation context.

Two forms are supported for `condition` edges:

- Textual expressions, e.g. ``user_input == "yes" && order.total > 10``
- Rule groups from the visual condition builder::

    {"operator": "AND", "rules": [
        {"type": "context_variable", "variable_path": "plan", "operator": "equals", "value": "pro"},
        {"type": "user_input", "operator": "contains", "value": "refund"},
    ]}

Malformed input raises ConditionEvaluationError; callers decide how to
treat it.
"""

import re
from typing import Any, Callable, List, Mapping, Optional, Sequence, Tuple

from flowbot_core.errors import ConditionEvaluationError


ExpressionDelegate = Callable[[str, Mapping[str, Any]], bool]

_MISSING = object()

# Checked in order; longer operators first
_COMPARISON_OPERATORS = ("===", "!==", "==", "!=", ">=", "<=", ">", "<")


def resolve_path(path: str, scope: Mapping[str, Any]) -> Any:
    """Get value from scope using dot notation."""
    current: Any = scope
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return None
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return None
            current = current[index]
        elif hasattr(current, part):
            current = getattr(current, part)
        else:
            return None
    return current


def _strip_quotes(value: str) -> Tuple[str, bool]:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1], True
    return value, False


def _to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(left: Any, op: str, right: Any) -> bool:
    """Compare two values."""
    if op in ("==", "==="):
        return left == right
    elif op in ("!=", "!=="):
        return left != right
    elif op == ">":
        return left > right
    elif op == "<":
        return left < right
    elif op == ">=":
        return left >= right
    elif op == "<=":
        return left <= right
    raise ConditionEvaluationError(f"Unknown operator: {op}")


def _scan(expression: str) -> List[Tuple[int, str, int]]:
    """Yield (index, char, paren depth) for characters outside string literals."""
    result = []
    quote: Optional[str] = None
    depth = 0
    for index, char in enumerate(expression):
        if quote:
            if char == quote:
                quote = None
            continue
        if char in ("'", '"'):
            quote = char
            continue
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                raise ConditionEvaluationError(f"Unbalanced parentheses: {expression}")
        result.append((index, char, depth))
    if quote:
        raise ConditionEvaluationError(f"Unterminated string literal: {expression}")
    if depth != 0:
        raise ConditionEvaluationError(f"Unbalanced parentheses: {expression}")
    return result


def _split_top_level(expression: str, separators: Sequence[str]) -> List[str]:
    """Split on separators that are outside quotes and parentheses."""
    positions = {index for index, _, depth in _scan(expression) if depth == 0}
    lowered = expression.lower()
    parts: List[str] = []
    start = 0
    index = 0
    while index < len(expression):
        matched = None
        if index in positions:
            for separator in separators:
                if lowered.startswith(separator, index):
                    matched = separator
                    break
        if matched:
            parts.append(expression[start:index])
            index += len(matched)
            start = index
        else:
            index += 1
    parts.append(expression[start:])
    return parts


def _find_operator(expression: str, operator: str) -> int:
    """Index of the first top-level occurrence of operator, or -1."""
    positions = {index for index, _, _ in _scan(expression)}
    index = expression.find(operator)
    while index != -1:
        if index in positions:
            return index
        index = expression.find(operator, index + 1)
    return -1


def _wrapped_in_parens(expression: str) -> bool:
    if not (expression.startswith("(") and expression.endswith(")")):
        return False
    # Outer parens must close at the very end
    for index, char, depth in _scan(expression):
        if depth == 0 and index < len(expression) - 1:
            return False
    return True


class ExpressionEvaluator:
    """
    Evaluates textual boolean expressions.

    Supports:
    - Logic: a && b, a and b, a || b, a or b, !a, not a, parentheses
    - Comparison: name == "value", count >= 3 (=== and !== are aliases)
    - Exists: slot.name exists, slot.name not exists
    - Contains: message contains "refund"
    - Regex: phone matches "^[0-9]{10}$"
    - Literals: true, false
    - Variable as boolean: is_vip
    """

    def __call__(self, expression: str, scope: Mapping[str, Any]) -> bool:
        return self.evaluate(expression, scope)

    def evaluate(self, expression: str, scope: Mapping[str, Any]) -> bool:
        if not isinstance(expression, str):
            raise ConditionEvaluationError(f"Expression must be a string, got {type(expression).__name__}")

        expression = expression.strip()
        if not expression:
            raise ConditionEvaluationError("Empty expression")

        if _wrapped_in_parens(expression):
            return self.evaluate(expression[1:-1], scope)

        or_parts = _split_top_level(expression, ("||", " or "))
        if len(or_parts) > 1:
            return any(self.evaluate(part, scope) for part in self._non_empty(or_parts, expression))

        and_parts = _split_top_level(expression, ("&&", " and "))
        if len(and_parts) > 1:
            return all(self.evaluate(part, scope) for part in self._non_empty(and_parts, expression))

        return self._evaluate_atom(expression, scope)

    @staticmethod
    def _non_empty(parts: List[str], expression: str) -> List[str]:
        if any(not part.strip() for part in parts):
            raise ConditionEvaluationError(f"Missing operand in: {expression}")
        return parts

    def _evaluate_atom(self, condition: str, scope: Mapping[str, Any]) -> bool:
        lowered = condition.lower()

        # Negation
        if lowered.startswith("not "):
            return not self.evaluate(condition[4:], scope)
        if condition.startswith("!") and not condition.startswith("!="):
            return not self.evaluate(condition[1:], scope)

        # Not exists (checked before exists)
        if lowered.endswith(" not exists"):
            var_name = condition[: -len(" not exists")].strip()
            return resolve_path(var_name, scope) is None

        # Exists check
        if lowered.endswith(" exists"):
            var_name = condition[: -len(" exists")].strip()
            return resolve_path(var_name, scope) is not None

        # Contains
        index = _find_operator(condition, " contains ")
        if index != -1:
            value = resolve_path(condition[:index].strip(), scope)
            search, _ = _strip_quotes(condition[index + len(" contains "):])
            if value is None:
                return False
            if isinstance(value, (list, tuple, set)):
                return any(search.lower() == str(item).lower() for item in value)
            return search.lower() in str(value).lower()

        # Matches (regex)
        index = _find_operator(condition, " matches ")
        if index != -1:
            value = resolve_path(condition[:index].strip(), scope)
            pattern, _ = _strip_quotes(condition[index + len(" matches "):])
            if value is None:
                return False
            try:
                return re.search(pattern, str(value)) is not None
            except re.error as e:
                raise ConditionEvaluationError(f"Invalid regex {pattern!r}: {e}")

        # Comparisons
        for op in _COMPARISON_OPERATORS:
            index = _find_operator(condition, op)
            if index == -1:
                continue
            left_expr = condition[:index].strip()
            right_expr = condition[index + len(op):].strip()
            if not left_expr or not right_expr:
                raise ConditionEvaluationError(f"Incomplete comparison: {condition}")
            return self._evaluate_comparison(left_expr, op, right_expr, scope)

        # Boolean-like values
        if lowered == "true":
            return True
        if lowered == "false":
            return False

        if not re.fullmatch(r"[A-Za-z_][\w.]*", condition):
            raise ConditionEvaluationError(f"Cannot parse condition: {condition}")

        # Variable as boolean
        return bool(resolve_path(condition, scope))

    def _evaluate_comparison(
        self,
        left_expr: str,
        op: str,
        right_expr: str,
        scope: Mapping[str, Any],
    ) -> bool:
        left = resolve_path(left_expr, scope)
        right_str, quoted = _strip_quotes(right_expr)

        if not quoted:
            lowered = right_str.lower()
            if lowered in ("null", "none"):
                return _compare(left, op, None) if op in ("==", "===", "!=", "!==") else False
            if lowered in ("true", "false"):
                right_bool = lowered == "true"
                if isinstance(left, bool) or left is None:
                    return _compare(bool(left), op, right_bool)

        # Try numeric comparison
        left_num = _to_number(left)
        right_num = _to_number(right_str)
        if left_num is not None and right_num is not None:
            return _compare(left_num, op, right_num)

        # String comparison
        left_str = "" if left is None else str(left)
        if isinstance(left, bool):
            left_str = "true" if left else "false"
        return _compare(left_str, op, right_str)


# =============================================================================
# Rule groups
# =============================================================================


def _text(value: Any, case_sensitive: bool) -> str:
    text = "" if value is None else str(value)
    return text if case_sensitive else text.lower()


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if value is None:
        return []
    return [item.strip() for item in str(value).split(",") if item.strip()]


def apply_operator(operator: str, actual: Any, expected: Any, case_sensitive: bool = False) -> bool:
    """Apply a rule operator from the visual condition builder."""
    if operator == "is_empty":
        return actual is None or actual == "" or actual == [] or actual == {}
    if operator == "not_empty":
        return not apply_operator("is_empty", actual, expected)

    if operator in ("greater_than", "less_than", "greater_equal", "less_equal"):
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return _compare(left, {
            "greater_than": ">",
            "less_than": "<",
            "greater_equal": ">=",
            "less_equal": "<=",
        }[operator], right)

    if operator in ("in_list", "not_in_list"):
        options = [_text(item, case_sensitive) for item in _as_list(expected)]
        found = _text(actual, case_sensitive) in options
        return found if operator == "in_list" else not found

    if operator == "matches_regex":
        if actual is None:
            return False
        flags = 0 if case_sensitive else re.IGNORECASE
        try:
            return re.search(str(expected), str(actual), flags) is not None
        except re.error as e:
            raise ConditionEvaluationError(f"Invalid regex {expected!r}: {e}")

    left = _text(actual, case_sensitive)
    right = _text(expected, case_sensitive)
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "contains":
        return right in left
    if operator == "not_contains":
        return right not in left
    if operator == "starts_with":
        return left.startswith(right)
    if operator == "ends_with":
        return left.endswith(right)

    raise ConditionEvaluationError(f"Unknown rule operator: {operator}")


def evaluate_rule(rule: Mapping[str, Any], scope: Mapping[str, Any]) -> bool:
    """Evaluate a single builder rule."""
    rule_type = rule.get("type")
    operator = rule.get("operator") or "equals"
    expected = rule.get("value")
    case_sensitive = bool(rule.get("case_sensitive", False))

    if rule_type == "context_variable":
        path = rule.get("variable_path") or rule.get("field")
        if not path:
            raise ConditionEvaluationError("context_variable rule needs variable_path")
        actual = resolve_path(path, scope)

    elif rule_type == "user_input":
        actual = scope.get("message")

    elif rule_type == "intent":
        actual = scope.get("intent")
        if rule.get("intent_name"):
            expected = rule["intent_name"]
            case_sensitive = True
        threshold = rule.get("confidence_threshold")
        if threshold is not None:
            confidence = _to_number(resolve_path("metadata.intent_confidence", scope))
            if confidence is None or confidence < float(threshold):
                return False

    elif rule_type == "regex":
        pattern = rule.get("pattern") or expected
        if not pattern:
            raise ConditionEvaluationError("regex rule needs a pattern")
        target = rule.get("field")
        actual = resolve_path(target, scope) if target else scope.get("message")
        return apply_operator("matches_regex", actual, pattern, case_sensitive)

    elif rule_type == "previous_node":
        node_id = rule.get("node_id")
        if not node_id:
            raise ConditionEvaluationError("previous_node rule needs node_id")
        visited = node_id in (scope.get("visited_nodes") or ())
        return visited if rule.get("visited", True) else not visited

    elif rule_type in ("contact", "conversation"):
        field_name = rule.get("field")
        if not field_name:
            raise ConditionEvaluationError(f"{rule_type} rule needs a field")
        actual = resolve_path(f"{rule_type}.{field_name}", scope)

    else:
        raise ConditionEvaluationError(f"Unknown rule type: {rule_type!r}")

    return apply_operator(operator, actual, expected, case_sensitive)


def evaluate_rule_group(group: Mapping[str, Any], scope: Mapping[str, Any]) -> bool:
    """Evaluate an AND/OR group of builder rules."""
    rules = group.get("rules") or []
    if not rules:
        raise ConditionEvaluationError("Rule group has no rules")

    operator = str(group.get("operator") or "AND").upper()
    if operator not in ("AND", "OR"):
        raise ConditionEvaluationError(f"Unknown group operator: {operator}")

    results = (
        evaluate_rule_group(rule, scope) if "rules" in rule else evaluate_rule(rule, scope)
        for rule in rules
    )
    return any(results) if operator == "OR" else all(results)
