"""Variable Resolver - ${var} interpolation against run variables"""
import re
from typing import Any, Dict, List, Set

from ..utils.logger import get_logger

logger = get_logger(__name__)

TOKEN_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)\}")

_MISSING = object()


def get_path(path: str, context: Dict[str, Any], default: Any = None) -> Any:
    """
    Get value from context using dot notation

    Example: "order.customer.id" -> context["order"]["customer"]["id"].
    Integer parts index into lists.
    """
    value: Any = context
    for part in path.split("."):
        if isinstance(value, dict):
            if part not in value:
                return default
            value = value[part]
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return default
    return value


class VariableResolver:
    """
    Resolve ${var} tokens in action parameters

    A string that is exactly one token keeps the variable's native type.
    Tokens embedded in longer strings are stringified. Unresolved
    references pass through literally.
    """

    def __init__(self, context: Dict[str, Any]):
        self.context = context

    def resolve(self, value: Any) -> Any:
        """Resolve tokens recursively through dicts and lists"""
        if isinstance(value, str):
            return self._resolve_string(value)
        if isinstance(value, dict):
            return {key: self.resolve(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve(item) for item in value]
        return value

    def _resolve_string(self, text: str) -> Any:
        whole = TOKEN_PATTERN.fullmatch(text)
        if whole:
            resolved = get_path(whole.group(1), self.context, _MISSING)
            if resolved is _MISSING:
                logger.debug(f"Unresolved variable reference: {text}")
                return text
            return resolved

        def replace(match: "re.Match[str]") -> str:
            resolved = get_path(match.group(1), self.context, _MISSING)
            if resolved is _MISSING:
                logger.debug(f"Unresolved variable reference: {match.group(0)}")
                return match.group(0)
            return "" if resolved is None else str(resolved)

        return TOKEN_PATTERN.sub(replace, text)


def find_references(value: Any) -> List[str]:
    """All ${...} paths referenced anywhere inside value, in order of appearance"""
    found: List[str] = []
    if isinstance(value, str):
        found.extend(TOKEN_PATTERN.findall(value))
    elif isinstance(value, dict):
        for item in value.values():
            found.extend(find_references(item))
    elif isinstance(value, list):
        for item in value:
            found.extend(find_references(item))
    return found


def root_name(reference: str) -> str:
    return reference.split(".", 1)[0]


def unresolved_references(value: Any, known_roots: Set[str]) -> List[str]:
    """References whose root variable is not in known_roots"""
    return [ref for ref in find_references(value) if root_name(ref) not in known_roots]
