from .resolver import ElementRef, ElementResolver
from .selectors import ParsedSelector, normalize_alternatives, parse_selector

__all__ = ["ElementRef", "ElementResolver", "ParsedSelector", "normalize_alternatives", "parse_selector"]
